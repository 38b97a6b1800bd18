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

import re

import httpx
import pytest
from pytest_httpx import HTTPXMock

from axreg_sync.config import Settings
from axreg_sync.extractor import AxregExtractor

BASE_URL = "https://axreg.test"


def _procedures_url(page: int) -> re.Pattern:
    return re.compile(rf"{re.escape(BASE_URL)}/v3/procedures\?.*\bpage={page}\b.*")


@pytest.fixture
def mock_settings() -> Settings:
    """Fixture for settings pointing at a fake API host."""
    return Settings(
        _env_file=None,
        api_url=BASE_URL,
        institution_key="inst-key",
        integrator_key="integ-key",
        page_size=2,
    )


async def _collect(extractor: AxregExtractor, updated_after: str = "2025-06-01"):
    pages = [page async for page in extractor.iter_procedures(updated_after)]
    return [procedure for page in pages for procedure in page], len(pages)


@pytest.mark.asyncio
async def test_iter_procedures_follows_pages_until_short_page(
    mock_settings: Settings, httpx_mock: HTTPXMock
):
    """A full page asks for the next one; a short page ends the stream."""
    httpx_mock.add_response(
        url=_procedures_url(1),
        json={"data": [{"id": 1, "patient_id": 10}, {"id": 2, "patient_id": None}]},
    )
    httpx_mock.add_response(
        url=_procedures_url(2),
        json={"data": [{"id": 3, "patient_id": 30}]},
    )

    extractor = AxregExtractor(settings=mock_settings)
    procedures, page_count = await _collect(extractor)

    assert page_count == 2
    assert [p.id for p in procedures] == [1, 2, 3]
    assert procedures[1].patient_id is None

    first_request = httpx_mock.get_requests()[0]
    assert first_request.url.params["limit"] == "2"
    assert first_request.url.params["updated_after"] == "2025-06-01"
    assert first_request.headers["institution-key"] == "inst-key"
    assert first_request.headers["integrator-key"] == "integ-key"


@pytest.mark.asyncio
async def test_iter_procedures_stops_on_empty_page(
    mock_settings: Settings, httpx_mock: HTTPXMock
):
    httpx_mock.add_response(
        url=_procedures_url(1),
        json={"data": [{"id": 1, "patient_id": 10}, {"id": 2, "patient_id": 20}]},
    )
    httpx_mock.add_response(url=_procedures_url(2), json={"data": []})

    extractor = AxregExtractor(settings=mock_settings)
    procedures, page_count = await _collect(extractor)

    assert page_count == 1
    assert len(procedures) == 2


@pytest.mark.asyncio
async def test_iter_procedures_stops_on_api_error(
    mock_settings: Settings, httpx_mock: HTTPXMock
):
    """An HTTP error ends the stream instead of raising."""
    httpx_mock.add_response(url=_procedures_url(1), status_code=500)

    extractor = AxregExtractor(settings=mock_settings)
    procedures, page_count = await _collect(extractor)

    assert procedures == []
    assert page_count == 0


@pytest.mark.asyncio
async def test_get_patient_parses_documents(mock_settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_response(
        url=f"{BASE_URL}/patients/10",
        json={
            "data": {
                "id": 10,
                "name": "Maria Silva",
                "cpf": "123.456.789-09",
                "pdf": [
                    {
                        "id": 501,
                        "procedure_id": 1,
                        "name": "transfer.pdf",
                        "type": "TRANS",
                        "created_at": "2025-06-10 11:00:00",
                    },
                    {"id": 502, "procedure_id": 1, "name": "other.pdf", "type": "OTHER"},
                ],
            }
        },
    )

    extractor = AxregExtractor(settings=mock_settings)
    patient = await extractor.get_patient(10)

    assert patient is not None
    assert patient.cpf == "123.456.789-09"
    assert [d.id for d in patient.pdf] == [501, 502]
    assert patient.pdf[0].created_at == "2025-06-10 11:00:00"
    assert patient.pdf[1].created_at is None


@pytest.mark.asyncio
async def test_get_patient_with_null_pdf_list(mock_settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_response(
        url=f"{BASE_URL}/patients/11",
        json={"data": {"id": 11, "name": None, "pdf": None}},
    )

    extractor = AxregExtractor(settings=mock_settings)
    patient = await extractor.get_patient(11)

    assert patient is not None
    assert patient.pdf == []
    assert patient.name == ""
    assert patient.cpf is None


@pytest.mark.asyncio
async def test_get_patient_returns_none_on_error(
    mock_settings: Settings, httpx_mock: HTTPXMock
):
    httpx_mock.add_response(url=f"{BASE_URL}/patients/12", status_code=404)

    extractor = AxregExtractor(settings=mock_settings)

    assert await extractor.get_patient(12) is None


@pytest.mark.asyncio
async def test_get_patient_returns_none_on_transport_error(
    mock_settings: Settings, httpx_mock: HTTPXMock
):
    httpx_mock.add_exception(httpx.ConnectTimeout("timed out"), url=f"{BASE_URL}/patients/13")

    extractor = AxregExtractor(settings=mock_settings)

    assert await extractor.get_patient(13) is None


@pytest.mark.asyncio
async def test_get_document_bytes(mock_settings: Settings, httpx_mock: HTTPXMock):
    httpx_mock.add_response(url=f"{BASE_URL}/pdfs/501", content=b"%PDF-1.4 body")

    extractor = AxregExtractor(settings=mock_settings)
    content = await extractor.get_document_bytes(501)

    assert content == b"%PDF-1.4 body"
    assert httpx_mock.get_requests()[0].headers["Accept"] == "application/pdf"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, body", [(500, b"error"), (200, b"")])
async def test_get_document_bytes_failure(
    mock_settings: Settings, httpx_mock: HTTPXMock, status_code, body
):
    httpx_mock.add_response(url=f"{BASE_URL}/pdfs/502", status_code=status_code, content=body)

    extractor = AxregExtractor(settings=mock_settings)

    assert await extractor.get_document_bytes(502) is None


@pytest.mark.asyncio
async def test_iter_procedures_stops_on_non_object_body(
    mock_settings: Settings, httpx_mock: HTTPXMock
):
    """A JSON list where an object is expected ends the stream instead of raising."""
    httpx_mock.add_response(url=_procedures_url(1), json=[{"id": 1}])

    extractor = AxregExtractor(settings=mock_settings)
    procedures, page_count = await _collect(extractor)

    assert procedures == []
    assert page_count == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [["unexpected"], {"data": ["unexpected"]}, "text"])
async def test_get_patient_returns_none_on_unexpected_body(
    mock_settings: Settings, httpx_mock: HTTPXMock, body
):
    httpx_mock.add_response(url=f"{BASE_URL}/patients/7", json=body)

    extractor = AxregExtractor(settings=mock_settings)

    assert await extractor.get_patient(7) is None
