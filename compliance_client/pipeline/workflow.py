from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, StateGraph

from compliance_client.clients.backend_client import ComplianceBackendClient
from compliance_client.exceptions import ComplianceClientError
from compliance_client.models.schemas import SessionPhase, SessionSnapshot
from compliance_client.pipeline.session import ComplianceSession
from compliance_client.pipeline.state import WorkflowState
from compliance_client.session.store import FileSessionBackend, SessionBackend, SessionIdentityStore
from settings import AppSettings


class ComplianceWorkflow:
    """Runs upload -> ingestion -> analysis -> results for a session in the background."""

    def __init__(
        self,
        settings: AppSettings,
        client: Optional[ComplianceBackendClient] = None,
        backend: Optional[SessionBackend] = None,
    ):
        self.settings = settings
        self.client = client or ComplianceBackendClient(settings)
        self.backend = backend or FileSessionBackend(settings.session.storage_dir)
        self.checkpointer = MemorySaver()
        self.sessions: Dict[str, ComplianceSession] = {}
        self.runs: Dict[str, asyncio.Task] = {}
        self.workflow = self._build_workflow()
        self.logger = logging.getLogger(__name__)

    def _build_workflow(self):
        graph = StateGraph(WorkflowState)
        graph.add_node("upload", self._upload)
        graph.add_node("ingest", self._ingest)
        graph.add_node("analyze", self._analyze)
        graph.add_node("await_results", self._await_results)
        graph.add_node("summarize", self._summarize)

        graph.set_conditional_entry_point(self._route_entry, {"upload": "upload", "ingest": "ingest"})
        graph.add_conditional_edges("upload", self._continue_or_stop, {"next": "ingest", "stop": END})
        graph.add_conditional_edges("ingest", self._route_after_ingest, {"analyze": "analyze", "stop": END})
        graph.add_conditional_edges("analyze", self._continue_or_stop, {"next": "await_results", "stop": END})
        graph.add_conditional_edges("await_results", self._continue_or_stop, {"next": "summarize", "stop": END})
        graph.add_edge("summarize", END)

        return graph.compile(checkpointer=self.checkpointer)

    async def get_session(self, session_key: str) -> ComplianceSession:
        session = self.sessions.get(session_key)
        if session is None:
            store = SessionIdentityStore(self.backend, session_key)
            session = ComplianceSession(self.settings, self.client, store)
            await session.resume()
            self.sessions[session_key] = session
        return session

    def get_snapshot(self, session_key: str) -> SessionSnapshot | None:
        session = self.sessions.get(session_key)
        return session.snapshot if session else None

    async def start(
        self,
        session_key: str,
        file_path: Optional[Path] = None,
        file_name: Optional[str] = None,
        auto_analyze: bool = False,
        moe_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> str:
        """Run the pipeline in the background.

        With ``document_id`` the file was already uploaded through the session
        and the run starts at ingestion; otherwise ``file_path`` is uploaded.
        """
        if file_path is None and document_id is None:
            raise ValueError("Either file_path or document_id is required")
        await self.get_session(session_key)
        previous = self.runs.get(session_key)
        if previous is not None and not previous.done():
            previous.cancel()
        self.logger.info(
            "Starting compliance workflow",
            extra={"session_key": session_key, "document_id": document_id, "auto_analyze": auto_analyze},
        )
        initial_state: WorkflowState = {
            "session_key": session_key,
            "file_path": str(file_path) if file_path is not None else None,
            "file_name": file_name,
            "moe_id": moe_id,
            "auto_analyze": auto_analyze,
            "phase": (SessionPhase.INGESTING if document_id else SessionPhase.UPLOADING).value,
            "document_id": document_id,
            "analysis_id": None,
            "counts": None,
            "error": None,
            "started_at": time.time(),
            "processing_time_ms": None,
        }
        self.runs[session_key] = asyncio.create_task(
            self.workflow.ainvoke(
                initial_state,
                config={"configurable": {"thread_id": session_key}},
            )
        )
        return session_key

    def is_running(self, session_key: str) -> bool:
        run = self.runs.get(session_key)
        return run is not None and not run.done()

    async def reset(self, session_key: str) -> SessionSnapshot:
        run = self.runs.pop(session_key, None)
        if run is not None and not run.done():
            run.cancel()
        session = await self.get_session(session_key)
        return await session.reset()

    async def close(self) -> None:
        for task in self.runs.values():
            if not task.done():
                task.cancel()
        for session in self.sessions.values():
            session.close()

    def _fail(self, state: WorkflowState, exc: Exception) -> WorkflowState:
        self.logger.warning(
            "Compliance workflow stopped",
            extra={"session_key": state.get("session_key"), "phase": state.get("phase"), "error": str(exc)},
        )
        state["phase"] = SessionPhase.FAILED.value
        state["error"] = str(exc)
        return state

    def _continue_or_stop(self, state: WorkflowState) -> str:
        return "stop" if state.get("error") else "next"

    def _route_entry(self, state: WorkflowState) -> str:
        return "ingest" if state.get("document_id") else "upload"

    def _route_after_ingest(self, state: WorkflowState) -> str:
        if state.get("error") or not state.get("auto_analyze"):
            return "stop"
        return "analyze"

    async def _upload(self, state: WorkflowState) -> WorkflowState:
        updated_state: WorkflowState = dict(state)
        session = await self.get_session(state["session_key"])
        try:
            response = await session.upload(
                Path(state["file_path"]),
                file_name=state.get("file_name"),
                moe_id=state.get("moe_id"),
            )
        except ComplianceClientError as exc:
            return self._fail(updated_state, exc)
        updated_state["document_id"] = response.document_id
        updated_state["phase"] = SessionPhase.INGESTING.value
        return updated_state

    async def _ingest(self, state: WorkflowState) -> WorkflowState:
        updated_state: WorkflowState = dict(state)
        session = await self.get_session(state["session_key"])
        try:
            await session.wait_ingestion()
        except ComplianceClientError as exc:
            return self._fail(updated_state, exc)
        updated_state["phase"] = SessionPhase.INGESTED.value
        self.logger.info(
            "Ingestion completed",
            extra={"session_key": state["session_key"], "document_id": state.get("document_id")},
        )
        return updated_state

    async def _analyze(self, state: WorkflowState) -> WorkflowState:
        updated_state: WorkflowState = dict(state)
        session = await self.get_session(state["session_key"])
        try:
            response = await session.start_analysis()
        except ComplianceClientError as exc:
            return self._fail(updated_state, exc)
        updated_state["analysis_id"] = response.analysis_id
        updated_state["phase"] = SessionPhase.ANALYZING.value
        return updated_state

    async def _await_results(self, state: WorkflowState) -> WorkflowState:
        updated_state: WorkflowState = dict(state)
        session = await self.get_session(state["session_key"])
        try:
            await session.wait_results()
        except ComplianceClientError as exc:
            return self._fail(updated_state, exc)
        updated_state["phase"] = SessionPhase.READY.value
        return updated_state

    async def _summarize(self, state: WorkflowState) -> WorkflowState:
        updated_state: WorkflowState = dict(state)
        session = await self.get_session(state["session_key"])
        counts = await session.outcomes.load_counts(state["analysis_id"])
        updated_state["counts"] = counts.model_dump() if counts else None
        started_at = state.get("started_at")
        if started_at:
            updated_state["processing_time_ms"] = int((time.time() - started_at) * 1000)
        self.logger.info(
            "Compliance workflow completed",
            extra={
                "session_key": state["session_key"],
                "analysis_id": state.get("analysis_id"),
                "processing_time_ms": updated_state.get("processing_time_ms"),
            },
        )
        return updated_state
