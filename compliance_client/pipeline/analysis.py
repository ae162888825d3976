from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from compliance_client.clients.backend_client import ComplianceBackendClient
from compliance_client.exceptions import (
    AnalysisFailedError,
    BackendRequestError,
    ConfigurationError,
    DocumentNotReadyError,
    NoActiveDocumentError,
)
from compliance_client.models.schemas import (
    AnalysisReport,
    DocumentStatus,
    ProcessingStatus,
    ReadinessUpdate,
    StartAnalysisResponse,
)
from compliance_client.pipeline.polling import ClockFn, PollingLoop, PollState, SleepFn
from compliance_client.session.store import SessionIdentityStore
from settings import RegulationSettings

ReadinessCallback = Callable[[ReadinessUpdate], Awaitable[None]]
DetectorFactory = Callable[[str], "ReadinessDetector"]

FAILED_REPORT_STATUSES = {"FAILED", "ERROR"}


class ReadinessDetector(PollingLoop):
    """Polls the full report of an analysis until it holds any outcome.

    Request errors (typically 404 while the run is still being persisted)
    count as "not ready yet". Only an explicit failed status in the report
    or the optional attempt/time bound stops the loop with an error.
    """

    name = "readiness detector"

    def __init__(
        self,
        client: ComplianceBackendClient,
        analysis_id: str,
        *,
        on_update: Optional[ReadinessCallback] = None,
        interval_seconds: float = 10.0,
        max_attempts: Optional[int] = None,
        max_wait_seconds: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Optional[ClockFn] = None,
    ):
        super().__init__(
            interval_seconds,
            max_attempts=max_attempts,
            max_wait_seconds=max_wait_seconds,
            sleep=sleep,
            clock=clock,
        )
        self.client = client
        self.analysis_id = analysis_id
        self._on_update = on_update

    async def _emit(self, update: ReadinessUpdate) -> None:
        if self.state is PollState.CANCELLED or self._on_update is None:
            return
        await self._on_update(update)

    async def _poll_once(self) -> Optional[AnalysisReport]:
        try:
            report = await self.client.get_analysis_report(self.analysis_id)
        except BackendRequestError as exc:
            if not self.active:
                return None
            self.logger.debug(
                "Analysis report not available yet",
                extra={"analysis_id": self.analysis_id, "status_code": exc.status_code, "attempt": self.attempts},
            )
            await self._emit(ReadinessUpdate(analysis_id=self.analysis_id, ready=False, attempts=self.attempts))
            return None
        if not self.active:
            return None

        if report.status and report.status.upper() in FAILED_REPORT_STATUSES:
            raise AnalysisFailedError(f"Analysis {self.analysis_id} failed on the backend", self.analysis_id)

        ready = len(report.compliance) > 0
        await self._emit(
            ReadinessUpdate(
                analysis_id=self.analysis_id,
                ready=ready,
                attempts=self.attempts,
                outcome_count=len(report.compliance),
            )
        )
        if ready:
            self.logger.info(
                "Analysis results materialized",
                extra={"analysis_id": self.analysis_id, "outcomes": len(report.compliance), "attempts": self.attempts},
            )
            return report
        return None

    async def _on_failure(self, exc: Exception) -> None:
        await self._emit(
            ReadinessUpdate(analysis_id=self.analysis_id, ready=False, attempts=self.attempts, error=str(exc))
        )


class AnalysisTrigger:
    """Starts one analysis run for the current document and hands the
    returned identity to a separately owned readiness detector."""

    def __init__(
        self,
        client: ComplianceBackendClient,
        store: SessionIdentityStore,
        regulation: RegulationSettings,
        detector_factory: DetectorFactory,
    ):
        self.client = client
        self.store = store
        self.regulation = regulation
        self.detector_factory = detector_factory
        self.detector: Optional[ReadinessDetector] = None
        self.logger = logging.getLogger(__name__)

    def _regulation_params(self) -> tuple[Optional[str], str]:
        version = (self.regulation.regulation_version or "").strip()
        regulation_id = (self.regulation.default_regulation_id or "").strip() or None
        if not version:
            raise ConfigurationError("Regulation version is not configured")
        if not self.regulation.auto_detect and regulation_id is None:
            raise ConfigurationError(
                "Default regulation id is not configured and backend auto-detection is disabled"
            )
        return (None if self.regulation.auto_detect else regulation_id), version

    async def _ensure_ready(self, document_id: str, status: Optional[DocumentStatus]) -> None:
        if status is None or status.document_id != document_id or status.status is not ProcessingStatus.COMPLETED:
            status = await self.client.get_document_status(document_id)
        if status.status is not ProcessingStatus.COMPLETED:
            raise DocumentNotReadyError(
                f"Document {document_id} is {status.status.value}; analysis needs a completed document"
            )

    async def start(self, status: Optional[DocumentStatus] = None) -> StartAnalysisResponse:
        regulation_id, version = self._regulation_params()
        document_id = self.store.get_document_identity()
        if not document_id:
            raise NoActiveDocumentError("Upload a document before starting an analysis")
        await self._ensure_ready(document_id, status)

        response = await self.client.start_analysis(
            document_id,
            regulation_id=regulation_id,
            regulation_version=version,
        )
        if self.store.get_document_identity() != document_id:
            # The document was replaced while the request was in flight.
            self.logger.warning(
                "Discarding analysis for superseded document",
                extra={"document_id": document_id, "analysis_id": response.analysis_id},
            )
            raise NoActiveDocumentError(f"Document {document_id} was superseded during analysis start")

        self.store.set_analysis_identity(response.analysis_id)
        self.logger.info(
            "Analysis started",
            extra={"document_id": document_id, "analysis_id": response.analysis_id},
        )
        self.watch(response.analysis_id)
        return response

    def watch(self, analysis_id: str) -> ReadinessDetector:
        self.cancel()
        self.detector = self.detector_factory(analysis_id)
        self.detector.start()
        return self.detector

    def cancel(self) -> None:
        if self.detector is not None:
            self.detector.cancel()
