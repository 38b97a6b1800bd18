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
"""Shared fixtures and in-memory doubles for the source API and the store."""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from axreg_sync.config import Settings
from axreg_sync.error_log import ErrorLog, FallbackState
from axreg_sync.loader.base import BaseStore
from axreg_sync.models import (
    DedupRecord,
    Patient,
    Procedure,
    ReservedIdentifier,
    ResolvedOwner,
)

TZ = ZoneInfo("America/Sao_Paulo")
NOW = datetime(2025, 6, 10, 12, 0, 0, tzinfo=TZ)


class FakeExtractor:
    """Serves procedures, patients and PDFs from dictionaries."""

    def __init__(
        self,
        procedures: list[Procedure],
        patients: dict[int, Patient | None],
        pdfs: dict[int, bytes | None],
        patient_delay: float = 0.0,
    ) -> None:
        self.procedures = procedures
        self.patients = patients
        self.pdfs = pdfs
        self.patient_delay = patient_delay
        self.patient_calls: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def iter_procedures(self, updated_after, limit=None):
        yield list(self.procedures)

    async def get_patient(self, patient_id: int) -> Patient | None:
        self.patient_calls.append(patient_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.patient_delay)
        finally:
            self.in_flight -= 1
        return self.patients.get(patient_id)

    async def get_document_bytes(self, pdf_id: int) -> bytes | None:
        return self.pdfs.get(pdf_id)


class FakeStore(BaseStore):
    """Keeps storage rows, markers and the counter in memory.

    `store_document` follows the same reconciliation rule as the database
    reservation and restores the counter when the insert fails.
    """

    def __init__(self, owners: dict[str, ResolvedOwner] | None = None) -> None:
        self.owners = owners or {}
        self.counter = 0
        self.rows: dict[int, dict] = {}
        self.markers: dict[int, DedupRecord] = {}
        self.fail_store = False
        self.fail_marker = False
        self.fail_resolve = False

    async def prepare_schema(self) -> None:
        return None

    async def is_imported(self, pdf_id: int) -> bool:
        return pdf_id in self.markers

    async def resolve_owner(self, cpf: str) -> ResolvedOwner | None:
        if self.fail_resolve:
            raise RuntimeError("directory unavailable")
        return self.owners.get(cpf)

    async def store_document(self, owner, content, created_at) -> ReservedIdentifier:
        counter_before = self.counter
        max_before = max(self.rows, default=0)
        value = max(max_before, counter_before) + 1
        self.counter = value
        if self.fail_store:
            self.counter = counter_before
            raise RuntimeError("insert failed")
        self.rows[value] = {
            "patient_key": owner.patient_key,
            "encounter_key": owner.encounter_key,
            "content": content,
            "created_at": created_at,
        }
        return ReservedIdentifier(
            value=value, counter_before=counter_before, max_before=max_before,
        )

    async def mark_imported(self, record: DedupRecord) -> bool:
        if self.fail_marker:
            raise RuntimeError("marker insert failed")
        if record.pdf_id in self.markers:
            return False
        self.markers[record.pdf_id] = record
        return True


def read_error_records(directory: Path) -> list[dict]:
    records = []
    for path in sorted(directory.glob("*.jsonl")):
        with open(path, encoding="utf-8") as handle:
            records.extend(json.loads(line) for line in handle if line.strip())
    return records


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        errors_dir=tmp_path / "errors",
        errors_fallback_dir=tmp_path / "fallback",
        report_dir=tmp_path / "reports",
        max_concurrency=4,
    )


@pytest.fixture
def error_log(settings: Settings) -> ErrorLog:
    return ErrorLog(
        settings.errors_dir, settings.errors_fallback_dir, FallbackState(), tz=TZ,
    )
