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
"""Defines the Pydantic data models for the application."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Reason(str, Enum):
    """Stable reason codes written to the error logs."""

    MISSING_TIMESTAMP = "missing-timestamp"
    MISSING_IDENTIFIER = "missing-identifier"
    NO_LOCAL_MATCH = "no-local-match"
    EMPTY_RESOLVED_KEYS = "empty-resolved-keys"
    DOWNLOAD_FAILURE = "download-failure"
    STORAGE_FAILURE = "storage-failure"
    MARKER_FAILURE = "marker-failure"
    PROCEDURE_FAILURE = "procedure-failure"
    PATIENT_FETCH_FAILURE = "patient-fetch-failure"


# Remote API payloads


class Procedure(BaseModel):
    """A clinical procedure as listed by the AXREG procedures endpoint."""

    id: int
    patient_id: int | None = None


class PatientDocument(BaseModel):
    """A PDF descriptor embedded in the patient payload.

    `created_at` is kept as the raw remote value; the eligibility filter
    decides whether it is usable.
    """

    id: int
    procedure_id: int | None = None
    name: str = ""
    type: str = ""
    created_at: str | None = None


class Patient(BaseModel):
    """A patient as returned by the AXREG patient endpoint."""

    id: int
    name: str = ""
    cpf: str | None = None
    pdf: list[PatientDocument] = Field(default_factory=list)

    @field_validator("pdf", mode="before")
    @classmethod
    def _null_pdf_list(cls, value):
        return [] if value is None else value

    @field_validator("name", mode="before")
    @classmethod
    def _null_name(cls, value):
        return "" if value is None else value


class EligibleDocument(BaseModel):
    """A document that passed the eligibility filter, with its parsed instant."""

    document: PatientDocument
    created_at: datetime


# Local destination


class ResolvedOwner(BaseModel):
    """The local patient/encounter pair a document is stored under."""

    patient_key: str
    encounter_key: str

    @property
    def is_blank(self) -> bool:
        return not self.patient_key.strip() or not self.encounter_key.strip()


class ReservedIdentifier(BaseModel):
    """The next storage identifier, with the values it was reconciled from."""

    value: int
    counter_before: int
    max_before: int


class StorageRecord(BaseModel):
    """A binary document row written to the storage table."""

    unit: int
    identifier: int
    patient_key: str
    encounter_key: str
    file_name: str
    content: bytes
    created_by: str
    created_at: datetime


class DedupRecord(BaseModel):
    """Marker proving a remote document has already been stored."""

    unit: int
    pdf_id: int
    procedure_id: int
    patient_id: int | None
    storage_id: int
    imported_at: datetime


# Reporting


class ErrorRecord(BaseModel):
    """One line of the error logs.

    Serialized with the camelCase aliases used by the log consumers.
    """

    model_config = ConfigDict(populate_by_name=True)

    when: str
    reason: Reason
    patient_id: int | str | None = Field(default=None, alias="patientId")
    patient_name: str | None = Field(default=None, alias="patientName")
    cpf: str | None = None
    pdf_id: int | str | None = Field(default=None, alias="pdfId")
    procedure_id: int | str | None = Field(default=None, alias="procedureId")
    details: str | None = None

    def as_log_row(self) -> dict[str, str]:
        """Return the aliased fields with missing values rendered as ''."""
        row = self.model_dump(mode="json", by_alias=True)
        return {key: "" if value is None else str(value) for key, value in row.items()}


class RunSummary(BaseModel):
    """Counters for one run, or for one procedure within a run."""

    procedures: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0

    def merge(self, other: "RunSummary") -> None:
        self.procedures += other.procedures
        self.inserted += other.inserted
        self.skipped += other.skipped
        self.failed += other.failed
