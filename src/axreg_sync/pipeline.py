# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Orchestrates one synchronization run from the AXREG API into the store.

Per eligible document the pipeline runs:

    dedup probe -> CPF normalization -> local resolution -> download
    -> storage transaction (reserve identifier + insert) -> dedup marker

The marker is written in its own transaction after the storage row commits.
If the process dies, or the marker insert fails, between those two steps the
document has a storage row but no marker and will be stored again by a later
run. Storage is therefore at-least-once in that window, while the dedup table
never holds more than one marker per document.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .config import Settings
from .eligibility import normalize_cpf, select_eligible
from .error_log import ErrorLog
from .extractor import AxregExtractor
from .loader.base import BaseStore
from .models import (
    DedupRecord,
    EligibleDocument,
    Patient,
    Procedure,
    Reason,
    RunSummary,
)
from .report import write_procedures_report

logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Runs one bounded 'changed since' window of the synchronization job."""

    def __init__(
        self,
        settings: Settings,
        extractor: AxregExtractor,
        store: BaseStore,
        error_log: ErrorLog,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.extractor = extractor
        self.store = store
        self.error_log = error_log
        self.clock = clock or (lambda: datetime.now(settings.tzinfo))

        self._patients: dict[int, asyncio.Future] = {}
        self._claimed: set[int] = set()
        self._report_entries: list[tuple[Procedure, Patient | None]] = []

    async def collect_procedures(self, updated_after: str) -> list[Procedure]:
        """Fetch every page of procedures, keeping the first of repeated ids."""
        seen: set[int] = set()
        procedures: list[Procedure] = []
        async for page in self.extractor.iter_procedures(
            updated_after, self.settings.page_size,
        ):
            for procedure in page:
                if procedure.id in seen:
                    continue
                seen.add(procedure.id)
                procedures.append(procedure)
        return procedures

    async def run(self, updated_after: str | None = None) -> RunSummary:
        """Process every procedure updated after the bound and return the totals."""
        now = self.clock()
        updated_after = updated_after or self.settings.effective_updated_after(now)

        procedures = await self.collect_procedures(updated_after)
        logger.info(
            "Fetched %d procedures updated after %s.", len(procedures), updated_after,
        )

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)

        async def bounded(procedure: Procedure) -> RunSummary:
            async with semaphore:
                return await self.process_procedure(procedure, now)

        results = await asyncio.gather(
            *(bounded(p) for p in procedures), return_exceptions=True,
        )

        summary = RunSummary()
        for procedure, result in zip(procedures, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Procedure %d aborted outside its error handling: %r",
                    procedure.id,
                    result,
                )
                summary.merge(RunSummary(procedures=1, failed=1))
                continue
            summary.merge(result)

        if self.settings.debug_report:
            await self._write_report(now)

        logger.info(
            "Run finished: %d procedures, %d inserted, %d skipped, %d failed.",
            summary.procedures,
            summary.inserted,
            summary.skipped,
            summary.failed,
        )
        return summary

    async def process_procedure(self, procedure: Procedure, now: datetime) -> RunSummary:
        """Ingest the eligible documents of one procedure, oldest first.

        Never raises: an unexpected error abandons the remaining documents of
        this procedure and is reported once as a procedure failure.
        """
        summary = RunSummary(procedures=1)
        patient: Patient | None = None
        try:
            if procedure.patient_id is None:
                logger.info("Procedure %d has no patient; nothing to ingest.", procedure.id)
                return summary

            patient = await self._get_patient(procedure.patient_id)
            if patient is None:
                self._fail(
                    summary,
                    Reason.PATIENT_FETCH_FAILURE,
                    patient_id=procedure.patient_id,
                    procedure_id=procedure.id,
                    details="Patient data unavailable from the remote API",
                )
                return summary

            result = select_eligible(
                patient.pdf,
                procedure.id,
                now,
                default_tz=self.settings.tzinfo,
                window_hours=self.settings.window_hours,
                document_type=self.settings.document_type,
            )
            for document in result.missing_timestamp:
                self._fail(
                    summary,
                    Reason.MISSING_TIMESTAMP,
                    **self._context(procedure, patient, document.id),
                    details=f"created_at={document.created_at!r}",
                )

            for eligible in result.eligible:
                await self.ingest_document(procedure, patient, eligible, summary)

        except Exception as e:
            logger.exception("Unexpected error processing procedure %d", procedure.id)
            self._fail(
                summary,
                Reason.PROCEDURE_FAILURE,
                patient_id=procedure.patient_id,
                patient_name=patient.name if patient else None,
                cpf=patient.cpf if patient else None,
                procedure_id=procedure.id,
                details=repr(e),
            )
        finally:
            if self.settings.debug_report:
                self._report_entries.append((procedure, patient))
        return summary

    async def ingest_document(
        self,
        procedure: Procedure,
        patient: Patient,
        eligible: EligibleDocument,
        summary: RunSummary,
    ) -> bool:
        """Run the per-document steps. Returns True when a storage row was committed."""
        pdf_id = eligible.document.id
        if pdf_id in self._claimed:
            summary.skipped += 1
            logger.info("PDF %d is already being handled in this run; skipping.", pdf_id)
            return False

        # Claimed before the first await so a sibling task cannot race us.
        self._claimed.add(pdf_id)
        stored = False
        try:
            stored = await self._ingest_claimed(procedure, patient, eligible, summary)
        finally:
            if not stored:
                self._claimed.discard(pdf_id)
        return stored

    async def _ingest_claimed(
        self,
        procedure: Procedure,
        patient: Patient,
        eligible: EligibleDocument,
        summary: RunSummary,
    ) -> bool:
        document = eligible.document
        context = self._context(procedure, patient, document.id)

        if await self.store.is_imported(document.id):
            summary.skipped += 1
            logger.info("PDF %d was already imported; skipping.", document.id)
            return False

        cpf = normalize_cpf(patient.cpf)
        if not cpf:
            self._fail(
                summary, Reason.MISSING_IDENTIFIER, **context,
                details="CPF is empty after normalization",
            )
            return False

        owner = await self.store.resolve_owner(cpf)
        if owner is None:
            self._fail(
                summary, Reason.NO_LOCAL_MATCH, **context,
                details=f"No local patient/encounter for CPF {cpf}",
            )
            return False
        if owner.is_blank:
            self._fail(
                summary, Reason.EMPTY_RESOLVED_KEYS, **context,
                details=(
                    f"patient_key={owner.patient_key!r} "
                    f"encounter_key={owner.encounter_key!r}"
                ),
            )
            return False

        # Downloaded before the transaction opens so no lock waits on the network.
        content = await self.extractor.get_document_bytes(document.id)
        if not content:
            self._fail(
                summary, Reason.DOWNLOAD_FAILURE, **context,
                details="Empty or failed PDF download",
            )
            return False

        try:
            reserved = await self.store.store_document(owner, content, self.clock())
        except Exception as e:
            logger.error("Storage transaction for PDF %d rolled back: %s", document.id, e)
            self._fail(summary, Reason.STORAGE_FAILURE, **context, details=repr(e))
            return False

        summary.inserted += 1
        logger.info(
            "Stored PDF %d for procedure %d as identifier %d.",
            document.id,
            procedure.id,
            reserved.value,
        )

        # Not part of the storage transaction; see the module docstring.
        marker = DedupRecord(
            unit=self.settings.unit,
            pdf_id=document.id,
            procedure_id=procedure.id,
            patient_id=patient.id,
            storage_id=reserved.value,
            imported_at=self.clock(),
        )
        try:
            await self.store.mark_imported(marker)
        except Exception as e:
            logger.error(
                "PDF %d stored as %d but its dedup marker was not written: %s",
                document.id,
                reserved.value,
                e,
            )
            self.error_log.record(
                Reason.MARKER_FAILURE,
                **context,
                details=f"storage_id={reserved.value}; {e!r}",
            )
        return True

    async def _get_patient(self, patient_id: int) -> Patient | None:
        # One fetch per patient per run, shared by every procedure that needs it.
        future = self._patients.get(patient_id)
        if future is None:
            future = asyncio.ensure_future(self.extractor.get_patient(patient_id))
            self._patients[patient_id] = future
        return await future

    @staticmethod
    def _context(procedure: Procedure, patient: Patient, pdf_id: int) -> dict[str, Any]:
        return {
            "patient_id": patient.id,
            "patient_name": patient.name,
            "cpf": patient.cpf,
            "pdf_id": pdf_id,
            "procedure_id": procedure.id,
        }

    def _fail(self, summary: RunSummary, reason: Reason, **fields: Any) -> None:
        summary.failed += 1
        logger.warning(
            "%s: procedure=%s pdf=%s %s",
            reason.value,
            fields.get("procedure_id"),
            fields.get("pdf_id"),
            fields.get("details") or "",
        )
        self.error_log.record(reason, **fields)

    async def _write_report(self, now: datetime) -> None:
        entries = sorted(self._report_entries, key=lambda entry: entry[0].id)
        path = self.settings.report_dir / f"procedures_report_{now:%Y%m%d_%H%M%S}.pdf"
        try:
            await asyncio.to_thread(write_procedures_report, entries, path)
        except Exception as e:
            logger.error("Failed to write the procedures report: %s", e)
