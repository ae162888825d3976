from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from compliance_client.clients.backend_client import ComplianceBackendClient
from compliance_client.exceptions import ProcessingFailedError
from compliance_client.models.schemas import DocumentStatus, ProcessingStatus, ProgressUpdate
from compliance_client.pipeline.polling import ClockFn, PollingLoop, PollState, SleepFn

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None]]

DEFAULT_FAILURE_MESSAGE = "Document processing failed"


def estimate_progress(completed_units: int, total_units: int) -> int:
    if total_units <= 0:
        return 0
    return max(0, round(min(100.0, completed_units / total_units * 100)))


class StatusPoller(PollingLoop):
    """Polls document ingestion status until COMPLETED or FAILED.

    Reported progress never decreases. In resume mode (started from a
    persisted identity after a restart) placeholder updates tick upwards
    below ``placeholder_ceiling`` until the first real status arrives.
    """

    name = "status poller"

    def __init__(
        self,
        client: ComplianceBackendClient,
        document_id: str,
        *,
        on_progress: Optional[ProgressCallback] = None,
        interval_seconds: float = 5.0,
        max_wait_seconds: Optional[float] = None,
        resume: bool = False,
        placeholder_ceiling: int = 90,
        placeholder_step: int = 5,
        placeholder_tick_seconds: float = 1.0,
        sleep: SleepFn = asyncio.sleep,
        clock: Optional[ClockFn] = None,
    ):
        super().__init__(interval_seconds, max_wait_seconds=max_wait_seconds, sleep=sleep, clock=clock)
        self.client = client
        self.document_id = document_id
        self.progress = 0
        self.last_status: Optional[DocumentStatus] = None
        self.resume = resume
        self.placeholder_ceiling = min(placeholder_ceiling, 99)
        self.placeholder_step = placeholder_step
        self.placeholder_tick_seconds = placeholder_tick_seconds
        self._on_progress = on_progress

    async def _emit(self, update: ProgressUpdate) -> None:
        if self.state is PollState.CANCELLED or self._on_progress is None:
            return
        await self._on_progress(update)

    async def _run_placeholder(self) -> None:
        value = 0
        while value < self.placeholder_ceiling:
            await self._sleep(self.placeholder_tick_seconds)
            if not self.active:
                return
            value = min(self.placeholder_ceiling, value + self.placeholder_step)
            await self._emit(
                ProgressUpdate(
                    document_id=self.document_id,
                    progress=value,
                    status=ProcessingStatus.PROCESSING,
                    placeholder=True,
                )
            )

    async def _fetch_status(self) -> DocumentStatus:
        if not self.resume or self.last_status is not None:
            return await self.client.get_document_status(self.document_id)
        placeholder = asyncio.create_task(self._run_placeholder())
        try:
            return await self.client.get_document_status(self.document_id)
        finally:
            placeholder.cancel()

    async def _poll_once(self) -> Optional[DocumentStatus]:
        status = await self._fetch_status()
        if not self.active:
            return None
        self.last_status = status
        self.logger.debug(
            "Document status",
            extra={
                "document_id": self.document_id,
                "status": status.status.value,
                "embedded": status.embedded_paragraphs,
                "total": status.total_paragraphs,
            },
        )

        if status.status is ProcessingStatus.COMPLETED:
            self.progress = 100
            await self._emit(
                ProgressUpdate(document_id=self.document_id, progress=100, status=ProcessingStatus.COMPLETED)
            )
            return status
        if status.status is ProcessingStatus.FAILED:
            raise ProcessingFailedError(status.error_message or DEFAULT_FAILURE_MESSAGE, self.document_id)

        self.progress = max(self.progress, estimate_progress(status.embedded_paragraphs, status.total_paragraphs))
        await self._emit(
            ProgressUpdate(document_id=self.document_id, progress=self.progress, status=ProcessingStatus.PROCESSING)
        )
        return None

    async def _on_failure(self, exc: Exception) -> None:
        # Timeouts and request errors leave the document status as last seen.
        if isinstance(exc, ProcessingFailedError):
            status = ProcessingStatus.FAILED
        else:
            status = self.last_status.status if self.last_status else ProcessingStatus.PROCESSING
        await self._emit(
            ProgressUpdate(document_id=self.document_id, progress=self.progress, status=status, error=str(exc))
        )
