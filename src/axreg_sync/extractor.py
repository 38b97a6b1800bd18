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
"""Provides a client to extract procedures, patients and PDFs from the AXREG API."""

import logging
from collections.abc import AsyncGenerator

import httpx
from pydantic import ValidationError

from .config import Settings
from .models import Patient, Procedure

logger = logging.getLogger(__name__)


def _response_data(response: httpx.Response):
    """Return the "data" member of a JSON object body, or None for any other body."""
    payload = response.json()
    if not isinstance(payload, dict):
        logger.warning(
            "Expected a JSON object from %s, got %s.", response.url, type(payload).__name__,
        )
        return None
    return payload.get("data")


class AxregExtractor:
    """Extractor for the AXREG clinical-records API.

    Pure I/O boundary: transport failures are logged and turned into empty
    results, never raised to the caller.
    """

    PROCEDURES_PATH = "/v3/procedures"
    PATIENT_PATH_TEMPLATE = "/patients/{patient_id}"
    PDF_PATH_TEMPLATE = "/pdfs/{pdf_id}"

    def __init__(
        self, settings: Settings, client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the extractor with settings and an optional HTTP client."""
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            base_url=settings.api_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "institution-key": settings.institution_key,
                "integrator-key": settings.integrator_key,
            },
            follow_redirects=True,
            timeout=settings.request_timeout,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def list_procedures(
        self, updated_after: str, page: int, limit: int,
    ) -> list[Procedure]:
        """Fetch a single page of procedures updated after the given bound.

        Raises httpx errors to the caller; `iter_procedures` decides how a
        failed page ends the stream.
        """
        response = await self.client.get(
            self.PROCEDURES_PATH,
            params={"updated_after": updated_after, "page": page, "limit": limit},
        )
        response.raise_for_status()
        data = _response_data(response)
        if not isinstance(data, list):
            if data is not None:
                logger.warning("Procedures page %d carried no list of records.", page)
            return []
        return [Procedure.model_validate(item) for item in data]

    async def iter_procedures(
        self, updated_after: str, limit: int | None = None,
    ) -> AsyncGenerator[list[Procedure], None]:
        """Yield pages of procedures until the stream ends.

        An empty page, or a page shorter than `limit`, is the last one.
        A failed page request is logged and also ends the stream.
        """
        limit = limit or self.settings.page_size
        page = 1
        total = 0
        while True:
            try:
                procedures = await self.list_procedures(updated_after, page, limit)
            except (httpx.RequestError, httpx.HTTPStatusError, ValueError) as e:
                logger.error("Failed to fetch procedures page %d: %s", page, e)
                break

            if not procedures:
                break

            total += len(procedures)
            logger.info(
                "Fetched page %d, received %d records, total so far: %d",
                page,
                len(procedures),
                total,
            )
            yield procedures

            if len(procedures) < limit:
                break
            page += 1

    async def get_patient(self, patient_id: int) -> Patient | None:
        """Fetch a patient with its embedded PDF descriptors, or None on failure."""
        path = self.PATIENT_PATH_TEMPLATE.format(patient_id=patient_id)
        try:
            response = await self.client.get(path)
            response.raise_for_status()
            data = _response_data(response)
        except (httpx.RequestError, httpx.HTTPStatusError, ValueError) as e:
            logger.warning("Failed to fetch patient %s: %s", patient_id, e)
            return None

        if not isinstance(data, dict) or not data:
            logger.warning("Unexpected payload for patient %s.", patient_id)
            return None
        try:
            return Patient.model_validate(data)
        except ValidationError as e:
            logger.warning("Invalid payload for patient %s: %s", patient_id, e)
            return None

    async def get_document_bytes(self, pdf_id: int) -> bytes | None:
        """Download the raw bytes of a PDF, or None on failure or empty body."""
        path = self.PDF_PATH_TEMPLATE.format(pdf_id=pdf_id)
        try:
            response = await self.client.get(
                path, headers={"Accept": "application/pdf"},
            )
            response.raise_for_status()
        except (httpx.RequestError, httpx.HTTPStatusError) as e:
            logger.warning("Failed to download PDF %s: %s", pdf_id, e)
            return None

        return response.content or None
