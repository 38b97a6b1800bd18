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
"""Writes a diagnostic PDF listing the procedures seen in a run."""

import logging
from collections.abc import Sequence
from pathlib import Path

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from .models import Patient, Procedure

logger = logging.getLogger(__name__)

MARGIN = 40
LINE_HEIGHT = 14


class _Writer:
    """Top-down text cursor that starts a new page when it runs out of room."""

    def __init__(self, c: canvas.Canvas) -> None:
        self.c = c
        self.width, self.height = A4
        self.y = self.height - MARGIN

    def line(self, text: str, size: int = 11, indent: int = 0, gap: int = 0) -> None:
        if self.y < MARGIN + LINE_HEIGHT:
            self.c.showPage()
            self.y = self.height - MARGIN
        self.c.setFont("Helvetica", size)
        self.c.drawString(MARGIN + indent, self.y, text)
        self.y -= LINE_HEIGHT + gap


def write_procedures_report(
    entries: Sequence[tuple[Procedure, Patient | None]],
    path: Path,
    title: str = "Procedures report",
) -> Path:
    """Render one block per procedure with its patient and documents.

    Args:
        entries: Procedures in the order they should be listed, each with
                 the patient fetched for it (None when unavailable).
        path: Destination file; parent directories are created.
        title: Heading of the first page.

    Returns:
        The path the report was written to.

    """
    path.parent.mkdir(parents=True, exist_ok=True)
    c = canvas.Canvas(str(path), pagesize=A4)
    writer = _Writer(c)
    writer.line(title, size=18, gap=10)

    for index, (procedure, patient) in enumerate(entries, start=1):
        writer.line(f"Procedure #{index}", size=13)
        writer.line(f"ID: {procedure.id}")
        patient_ref = "null" if procedure.patient_id is None else procedure.patient_id
        writer.line(f"Patient ID: {patient_ref}")

        if patient is not None:
            writer.line(f"Name: {patient.name}")
            writer.line(f"CPF: {patient.cpf or 'not informed'}")
            writer.line(f"PDFs: {len(patient.pdf)}")
            for document in patient.pdf:
                writer.line(
                    f"-> PDF ID {document.id} | Type: {document.type} "
                    f"| Procedure: {document.procedure_id}",
                    size=10,
                    indent=12,
                )
        writer.y -= LINE_HEIGHT

    c.save()
    logger.info("PDF report written: %s", path)
    return path
