from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from compliance_client.clients.backend_client import ComplianceBackendClient
from compliance_client.exceptions import InvalidFileError
from compliance_client.models.schemas import IngestResponse
from compliance_client.pipeline.status_poller import StatusPoller
from compliance_client.session.store import SessionIdentityStore
from settings import UploadSettings

PollerFactory = Callable[[str, bool], StatusPoller]
UploadSource = Union[Path, str, bytes, BinaryIO]

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def guess_content_type(file_name: str) -> str:
    if file_name.lower().endswith(".docx"):
        return DOCX_CONTENT_TYPE
    return mimetypes.guess_type(file_name)[0] or "application/octet-stream"


class UploadOrchestrator:
    """Uploads a document and hands the new identity to a status poller.

    Only a successful upload touches the session: the identity is written
    once (dropping any analysis of the previous document) and the poller of
    the superseded document is cancelled before the new one starts.
    """

    def __init__(
        self,
        client: ComplianceBackendClient,
        store: SessionIdentityStore,
        settings: UploadSettings,
        poller_factory: PollerFactory,
    ):
        self.client = client
        self.store = store
        self.settings = settings
        self.poller_factory = poller_factory
        self.poller: Optional[StatusPoller] = None
        self.logger = logging.getLogger(__name__)

    def validate(self, file_name: str, size: Optional[int]) -> None:
        extension = Path(file_name).suffix.lower()
        allowed = [ext.lower() for ext in self.settings.allowed_extensions]
        if allowed and extension not in allowed:
            raise InvalidFileError(f"File type {extension or '(none)'} is not accepted; expected one of {', '.join(allowed)}")
        max_bytes = int(self.settings.max_file_size_mb * 1024 * 1024)
        if size is not None and size > max_bytes:
            raise InvalidFileError(f"File is larger than {self.settings.max_file_size_mb:g} MB")
        if size == 0:
            raise InvalidFileError("File is empty")

    async def upload(
        self,
        source: UploadSource,
        file_name: Optional[str] = None,
        moe_id: Optional[str] = None,
    ) -> IngestResponse:
        if isinstance(source, (str, Path)):
            path = Path(source)
            name = file_name or path.name
            self.validate(name, path.stat().st_size)
            with path.open("rb") as handle:
                response = await self.client.upload_document(name, handle, guess_content_type(name), moe_id=moe_id)
        else:
            if not file_name:
                raise InvalidFileError("A file name is required when uploading raw content")
            size = len(source) if isinstance(source, bytes) else None
            self.validate(file_name, size)
            response = await self.client.upload_document(
                file_name, source, guess_content_type(file_name), moe_id=moe_id
            )

        self.store.set_document_identity(response.document_id)
        self.logger.info(
            "Document uploaded",
            extra={"document_id": response.document_id, "file_name": response.file_name, "size": response.file_size},
        )
        self.watch(response.document_id)
        return response

    def watch(self, document_id: str, resume: bool = False) -> StatusPoller:
        self.cancel()
        self.poller = self.poller_factory(document_id, resume)
        self.poller.start()
        return self.poller

    def cancel(self) -> None:
        if self.poller is not None:
            self.poller.cancel()
