from __future__ import annotations

import asyncio
import logging
from typing import Optional

from compliance_client.clients.backend_client import ComplianceBackendClient
from compliance_client.exceptions import (
    ComplianceClientError,
    NoActiveAnalysisError,
    NoActiveDocumentError,
)
from compliance_client.models.schemas import (
    AnalysisReport,
    DocumentStatus,
    IngestResponse,
    PageQuery,
    ProcessingStatus,
    ProgressUpdate,
    ReadinessUpdate,
    SessionPhase,
    SessionSnapshot,
    StartAnalysisResponse,
)
from compliance_client.pipeline.analysis import AnalysisTrigger, ReadinessDetector
from compliance_client.pipeline.outcomes import OutcomeQueryService
from compliance_client.pipeline.polling import ClockFn, SleepFn
from compliance_client.pipeline.status_poller import StatusPoller
from compliance_client.pipeline.upload import UploadOrchestrator, UploadSource
from compliance_client.session.store import SessionIdentityStore
from settings import AppSettings


class ComplianceSession:
    """Everything one client session needs, sharing a single identity store."""

    def __init__(
        self,
        settings: AppSettings,
        client: ComplianceBackendClient,
        store: SessionIdentityStore,
        *,
        sleep: SleepFn = asyncio.sleep,
        clock: Optional[ClockFn] = None,
    ):
        self.settings = settings
        self.client = client
        self.store = store
        self._sleep = sleep
        self._clock = clock
        self.snapshot = SessionSnapshot(session_key=store.session_key)
        self.outcomes = OutcomeQueryService(client, settings.polling.page_size)
        self.uploads = UploadOrchestrator(client, store, settings.upload, self._make_poller)
        self.analysis = AnalysisTrigger(client, store, settings.regulation, self._make_detector)
        self.logger = logging.getLogger(__name__)

    @property
    def session_key(self) -> str:
        return self.store.session_key

    def _make_poller(self, document_id: str, resume: bool) -> StatusPoller:
        polling = self.settings.polling
        return StatusPoller(
            self.client,
            document_id,
            on_progress=self._on_progress,
            interval_seconds=polling.status_interval_seconds,
            max_wait_seconds=polling.max_wait_seconds,
            resume=resume,
            placeholder_ceiling=polling.placeholder_ceiling,
            placeholder_step=polling.placeholder_step,
            placeholder_tick_seconds=polling.placeholder_tick_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )

    def _make_detector(self, analysis_id: str) -> ReadinessDetector:
        polling = self.settings.polling
        return ReadinessDetector(
            self.client,
            analysis_id,
            on_update=self._on_readiness,
            interval_seconds=polling.readiness_interval_seconds,
            max_attempts=polling.readiness_max_attempts,
            max_wait_seconds=polling.max_wait_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )

    def _update(self, **changes: object) -> None:
        self.snapshot = self.snapshot.model_copy(update=changes)

    async def _on_progress(self, update: ProgressUpdate) -> None:
        if update.document_id != self.snapshot.document_id:
            return
        if update.error:
            self._update(phase=SessionPhase.FAILED, error=update.error, message="Document processing failed")
        elif update.status is ProcessingStatus.COMPLETED:
            self._update(phase=SessionPhase.INGESTED, progress=100, error=None, message="Document ready for analysis")
        else:
            self._update(
                phase=SessionPhase.INGESTING,
                progress=update.progress,
                message=f"Processing document... {update.progress}%",
            )

    async def _on_readiness(self, update: ReadinessUpdate) -> None:
        if update.analysis_id != self.snapshot.analysis_id:
            return
        if update.error:
            self._update(phase=SessionPhase.FAILED, error=update.error, message="Analysis did not produce results")
        elif update.ready:
            self._update(
                phase=SessionPhase.READY,
                error=None,
                message=f"Analysis completed with {update.outcome_count} requirements",
            )
        else:
            self._update(phase=SessionPhase.ANALYZING, message=f"Waiting for analysis results (check {update.attempts})")

    async def resume(self) -> SessionSnapshot:
        """Hydrate identities and restart whichever loop the session was in."""
        self.store.hydrate()
        document_id = self.store.get_document_identity()
        analysis_id = self.store.get_analysis_identity()
        if analysis_id:
            self._update(
                phase=SessionPhase.ANALYZING,
                progress=100,
                document_id=document_id,
                analysis_id=analysis_id,
                message="Resuming analysis",
            )
            self.analysis.watch(analysis_id)
        elif document_id:
            self._update(phase=SessionPhase.INGESTING, document_id=document_id, message="Resuming document processing")
            self.uploads.watch(document_id, resume=True)
        self.logger.info(
            "Session resumed",
            extra={"session_key": self.session_key, "document_id": document_id, "analysis_id": analysis_id},
        )
        return self.snapshot

    async def upload(
        self,
        source: UploadSource,
        file_name: Optional[str] = None,
        moe_id: Optional[str] = None,
    ) -> IngestResponse:
        previous = self.snapshot
        self._update(phase=SessionPhase.UPLOADING, error=None, message="Uploading document...")
        try:
            response = await self.uploads.upload(source, file_name=file_name, moe_id=moe_id)
        except ComplianceClientError as exc:
            self.snapshot = previous.model_copy(update={"error": str(exc)})
            raise
        self.analysis.cancel()
        self.outcomes.reset()
        self._update(
            phase=SessionPhase.INGESTING,
            progress=0,
            document_id=response.document_id,
            analysis_id=None,
            error=None,
            message="Processing document... 0%",
        )
        return response

    async def wait_ingestion(self) -> DocumentStatus:
        if self.uploads.poller is None:
            raise NoActiveDocumentError("No document is being processed")
        return await self.uploads.poller.wait()

    async def start_analysis(self) -> StartAnalysisResponse:
        poller = self.uploads.poller
        status = poller.last_status if poller is not None else None
        previous = self.snapshot
        self._update(phase=SessionPhase.ANALYZING, error=None, message="Starting analysis...")
        try:
            response = await self.analysis.start(status)
        except ComplianceClientError as exc:
            self.snapshot = previous.model_copy(update={"error": str(exc)})
            raise
        self.outcomes.reset()
        self._update(analysis_id=response.analysis_id, message=response.message or "Analysis started")
        return response

    async def wait_results(self) -> AnalysisReport:
        if self.analysis.detector is None:
            raise NoActiveAnalysisError("No analysis is being watched")
        return await self.analysis.detector.wait()

    def browse(self) -> PageQuery:
        analysis_id = self.store.get_analysis_identity()
        if not analysis_id:
            raise NoActiveAnalysisError("Start an analysis before browsing results")
        return self.outcomes.open(analysis_id)

    def close(self) -> None:
        self.uploads.cancel()
        self.analysis.cancel()

    async def reset(self) -> SessionSnapshot:
        self.close()
        self.store.clear()
        self.outcomes.reset()
        self.snapshot = SessionSnapshot(session_key=self.session_key)
        self.logger.info("Session reset", extra={"session_key": self.session_key})
        return self.snapshot
