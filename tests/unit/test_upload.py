import asyncio
import io
from unittest.mock import MagicMock

import pytest

from compliance_client.exceptions import BackendRequestError, InvalidFileError
from compliance_client.models.schemas import IngestResponse
from compliance_client.pipeline.status_poller import StatusPoller
from compliance_client.pipeline.upload import DOCX_CONTENT_TYPE, UploadOrchestrator, guess_content_type
from settings import UploadSettings


def ingest_response(document_id: str = "D1") -> IngestResponse:
    return IngestResponse.model_validate(
        {"documentId": document_id, "fileName": "moe.pdf", "fileSize": 2048, "paragraphCount": 120, "status": "PROCESSING"}
    )


@pytest.fixture()
def poller_factory() -> MagicMock:
    return MagicMock(side_effect=lambda document_id, resume: MagicMock(spec=StatusPoller, document_id=document_id))


@pytest.fixture()
def orchestrator(client, store, poller_factory) -> UploadOrchestrator:
    return UploadOrchestrator(client, store, UploadSettings(max_file_size_mb=1), poller_factory)


class TestGuessContentType:
    def test_pdf(self) -> None:
        assert guess_content_type("manual.PDF") == "application/pdf"

    def test_docx(self) -> None:
        assert guess_content_type("manual.docx") == DOCX_CONTENT_TYPE


class TestUploadOrchestrator:
    def test_success_stores_identity_and_starts_poller(self, orchestrator, client, store, poller_factory) -> None:
        client.upload_document.return_value = ingest_response("D1")

        response = asyncio.run(orchestrator.upload(b"%PDF-1.7", file_name="moe.pdf", moe_id="MOE-7"))

        assert response.document_id == "D1"
        assert store.get_document_identity() == "D1"
        poller_factory.assert_called_once_with("D1", False)
        orchestrator.poller.start.assert_called_once()
        client.upload_document.assert_awaited_once_with("moe.pdf", b"%PDF-1.7", "application/pdf", moe_id="MOE-7")

    def test_new_upload_supersedes_previous_document(self, orchestrator, client, store) -> None:
        store.set_document_identity("D0")
        store.set_analysis_identity("A0")
        client.upload_document.side_effect = [ingest_response("D1"), ingest_response("D2")]

        asyncio.run(orchestrator.upload(b"one", file_name="one.pdf"))
        first = orchestrator.poller
        asyncio.run(orchestrator.upload(b"two", file_name="two.pdf"))

        first.cancel.assert_called_once()
        assert orchestrator.poller.document_id == "D2"
        assert store.get_document_identity() == "D2"
        assert store.get_analysis_identity() is None

    def test_failure_leaves_session_untouched(self, orchestrator, client, store, backend, poller_factory) -> None:
        store.set_document_identity("D0")
        writes = backend.writes
        client.upload_document.side_effect = BackendRequestError("Only PDF files are supported", status_code=400)

        with pytest.raises(BackendRequestError) as exc_info:
            asyncio.run(orchestrator.upload(b"%PDF", file_name="moe.pdf"))

        assert str(exc_info.value) == "Only PDF files are supported"
        assert store.get_document_identity() == "D0"
        assert backend.writes == writes
        poller_factory.assert_not_called()

    def test_failure_keeps_running_poller(self, orchestrator, client) -> None:
        client.upload_document.side_effect = [ingest_response("D1"), BackendRequestError("Service unavailable", 503)]

        asyncio.run(orchestrator.upload(b"one", file_name="one.pdf"))
        running = orchestrator.poller
        with pytest.raises(BackendRequestError):
            asyncio.run(orchestrator.upload(b"two", file_name="two.pdf"))

        running.cancel.assert_not_called()
        assert orchestrator.poller is running

    def test_rejects_unsupported_extension(self, orchestrator, client) -> None:
        with pytest.raises(InvalidFileError):
            asyncio.run(orchestrator.upload(b"text", file_name="notes.txt"))

        client.upload_document.assert_not_awaited()

    def test_rejects_oversized_and_empty_content(self, orchestrator) -> None:
        with pytest.raises(InvalidFileError):
            orchestrator.validate("moe.pdf", 2 * 1024 * 1024)
        with pytest.raises(InvalidFileError):
            orchestrator.validate("moe.pdf", 0)

    def test_raw_content_requires_file_name(self, orchestrator, client) -> None:
        with pytest.raises(InvalidFileError):
            asyncio.run(orchestrator.upload(io.BytesIO(b"%PDF")))

        client.upload_document.assert_not_awaited()

    def test_uploads_from_path(self, orchestrator, client, tmp_path) -> None:
        document = tmp_path / "exposition.docx"
        document.write_bytes(b"PK\x03\x04")
        client.upload_document.return_value = ingest_response("D1")

        asyncio.run(orchestrator.upload(document))

        args = client.upload_document.await_args
        assert args.args[0] == "exposition.docx"
        assert args.args[2] == DOCX_CONTENT_TYPE
