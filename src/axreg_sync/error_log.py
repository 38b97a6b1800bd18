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
"""Append-only error logs (JSONL and CSV) for documents that need follow-up."""

import csv
import json
import logging
from datetime import datetime, tzinfo
from pathlib import Path

from .models import ErrorRecord, Reason

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "when",
    "reason",
    "patientId",
    "patientName",
    "cpf",
    "pdfId",
    "procedureId",
    "details",
]


class FallbackState:
    """Process-scoped memory of whether the fallback has been announced."""

    def __init__(self) -> None:
        self._has_warned = False

    @property
    def has_warned(self) -> bool:
        return self._has_warned

    def mark_warned(self) -> bool:
        """Record the announcement. Returns True only the first time."""
        if self._has_warned:
            return False
        self._has_warned = True
        return True


def daily_filenames(base_dir: Path, day: datetime) -> tuple[Path, Path]:
    stamp = day.strftime("%Y%m%d")
    return (
        base_dir / f"axreg_errors_{stamp}.jsonl",
        base_dir / f"axreg_errors_{stamp}.csv",
    )


def _append_both_formats(base_dir: Path, record: ErrorRecord, day: datetime) -> None:
    base_dir.mkdir(parents=True, exist_ok=True)
    jsonl_path, csv_path = daily_filenames(base_dir, day)
    row = record.as_log_row()

    # Lone surrogates from the API cannot be encoded as UTF-8.
    with open(jsonl_path, "a", encoding="utf-8", errors="backslashreplace") as handle:
        handle.write(json.dumps(row, ensure_ascii=False))
        handle.write("\n")

    write_header = not csv_path.exists()
    with open(
        csv_path, "a", encoding="utf-8", errors="backslashreplace", newline="",
    ) as handle:
        if write_header:
            # The header is not quoted, unlike the data rows.
            handle.write(",".join(CSV_COLUMNS) + "\n")
        writer = csv.DictWriter(
            handle,
            fieldnames=CSV_COLUMNS,
            quoting=csv.QUOTE_ALL,
            lineterminator="\n",
        )
        writer.writerow(row)


class ErrorLog:
    """Writes one record per rejected document to the daily error files.

    Records go to `primary_dir`. When that fails (unmounted share, missing
    permissions), they go to `fallback_dir` instead and a warning is logged
    the first time only, as tracked by the shared `FallbackState`.
    """

    def __init__(
        self,
        primary_dir: Path,
        fallback_dir: Path,
        state: FallbackState,
        tz: tzinfo | None = None,
    ) -> None:
        self.primary_dir = Path(primary_dir)
        self.fallback_dir = Path(fallback_dir)
        self.state = state
        self.tz = tz

    def record(
        self,
        reason: Reason,
        *,
        patient_id: int | str | None = None,
        patient_name: str | None = None,
        cpf: str | None = None,
        pdf_id: int | str | None = None,
        procedure_id: int | str | None = None,
        details: str | None = None,
    ) -> ErrorRecord:
        now = datetime.now(self.tz) if self.tz else datetime.now().astimezone()
        entry = ErrorRecord(
            when=now.isoformat(),
            reason=reason,
            patient_id=patient_id,
            patient_name=patient_name,
            cpf=cpf,
            pdf_id=pdf_id,
            procedure_id=procedure_id,
            details=details,
        )
        self.write(entry, now)
        return entry

    def write(self, entry: ErrorRecord, day: datetime) -> None:
        try:
            _append_both_formats(self.primary_dir, entry, day)
            return
        except (OSError, ValueError) as e:
            primary_error = e

        try:
            _append_both_formats(self.fallback_dir, entry, day)
        except (OSError, ValueError) as e:
            logger.error("Failed to write error logs to the local fallback: %s", e)
            return

        if self.state.mark_warned():
            logger.warning(
                "Could not write to %s (%s). Using local fallback: %s",
                self.primary_dir,
                primary_error,
                self.fallback_dir.resolve(),
            )
