from typing import Any, Dict, List
from unittest.mock import AsyncMock

import pytest

from compliance_client.clients.backend_client import ComplianceBackendClient
from compliance_client.models.schemas import AnalysisReport, DocumentStatus
from compliance_client.session.store import MemorySessionBackend, SessionIdentityStore
from settings import AppSettings, PollingSettings


class FakeSleep:
    """Records requested delays without waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_status(status: str, embedded: int = 0, total: int = 100, error: str | None = None, document_id: str = "D1") -> DocumentStatus:
    payload: Dict[str, Any] = {
        "documentId": document_id,
        "status": status,
        "totalParagraphs": total,
        "embeddedParagraphs": embedded,
        "embeddingComplete": status == "COMPLETED",
    }
    if error is not None:
        payload["errorMessage"] = error
    return DocumentStatus.model_validate(payload)


def make_outcome(requirement_id: str = "145.A.30", status: str = "full", **overrides: Any) -> Dict[str, Any]:
    outcome: Dict[str, Any] = {
        "requirement_id": requirement_id,
        "compliance_status": status,
        "finding_level": "Level 2",
        "justification": "Covered by MOE 1.4",
        "evidence": ["The accountable manager is responsible for funding."],
        "missing_elements": [],
        "recommended_actions": [],
    }
    outcome.update(overrides)
    return outcome


def make_report(outcomes: List[Dict[str, Any]] | None = None, analysis_id: str = "A1", status: str | None = None) -> AnalysisReport:
    payload: Dict[str, Any] = {
        "analysisId": analysis_id,
        "moeId": "D1",
        "regulationVersion": "2025-09-AMC-GM",
        "totalRequirements": len(outcomes or []),
        "compliance": outcomes or [],
    }
    if status is not None:
        payload["status"] = status
    return AnalysisReport.model_validate(payload)


@pytest.fixture()
def settings() -> AppSettings:
    return AppSettings(
        polling=PollingSettings(
            status_interval_seconds=5.0,
            readiness_interval_seconds=10.0,
            placeholder_tick_seconds=1.0,
        )
    )


@pytest.fixture()
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture()
def client() -> AsyncMock:
    return AsyncMock(spec=ComplianceBackendClient)


@pytest.fixture()
def backend() -> MemorySessionBackend:
    return MemorySessionBackend()


@pytest.fixture()
def store(backend: MemorySessionBackend) -> SessionIdentityStore:
    identity_store = SessionIdentityStore(backend, "tab-1")
    identity_store.hydrate()
    return identity_store
