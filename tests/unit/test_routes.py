from unittest.mock import AsyncMock, call, patch

import pytest
from fastapi.testclient import TestClient

from compliance_client.exceptions import BackendRequestError
from compliance_client.main import create_app
from compliance_client.models.schemas import ComplianceStatus, IngestResponse, OutcomePage, StartAnalysisResponse
from compliance_client.pipeline.workflow import ComplianceWorkflow
from compliance_client.session.store import ANALYSIS_KEY, DOCUMENT_KEY, MemorySessionBackend
from conftest import make_outcome, make_report, make_status
from settings import AppSettings, PollingSettings

BASE = "/api/v1/compliance/sessions"


@pytest.fixture()
def app_settings() -> AppSettings:
    return AppSettings(
        polling=PollingSettings(
            status_interval_seconds=0,
            readiness_interval_seconds=0,
            placeholder_tick_seconds=0,
            stream_interval_seconds=0,
        )
    )


@pytest.fixture()
def workflow(app_settings, client, backend) -> ComplianceWorkflow:
    return ComplianceWorkflow(app_settings, client=client, backend=backend)


@pytest.fixture()
def api(app_settings, workflow):
    with TestClient(create_app(app_settings, workflow=workflow)) as test_client:
        yield test_client


def seed_analysis(backend: MemorySessionBackend, client) -> None:
    backend.records["tab-1"] = {DOCUMENT_KEY: "D1", ANALYSIS_KEY: "A1"}
    client.get_analysis_report.return_value = make_report(
        [make_outcome("145.A.30", "full"), make_outcome("145.A.35", "partial")]
    )
    client.get_outcomes_page.return_value = OutcomePage.model_validate(
        {
            "content": [make_outcome("145.A.30", "full"), make_outcome("145.A.35", "partial")],
            "totalElements": 2,
            "totalPages": 1,
            "size": 20,
            "number": 0,
        }
    )


class TestHealthAndProgress:
    def test_health(self, api) -> None:
        response = api.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_new_session_is_idle(self, api) -> None:
        response = api.get(f"{BASE}/tab-1/progress")

        assert response.status_code == 200
        body = response.json()
        assert body["phase"] == "IDLE"
        assert body["document_id"] is None

    def test_stream_ends_for_idle_session(self, api) -> None:
        response = api.get(f"{BASE}/tab-1/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert '"phase": "IDLE"' in response.text


class TestUploadRoute:
    def test_uploads_then_starts_workflow(self, api, client, workflow) -> None:
        client.upload_document.return_value = IngestResponse.model_validate({"documentId": "D1"})
        client.get_document_status.return_value = make_status("COMPLETED", 100)

        with patch.object(workflow, "start", AsyncMock(return_value="tab-1")) as start:
            response = api.post(
                f"{BASE}/tab-1/upload",
                files={"file": ("moe.pdf", b"%PDF-1.7", "application/pdf")},
                data={"auto_analyze": "true", "moe_id": "MOE-7"},
            )

        assert response.status_code == 200
        assert response.json()["document_id"] == "D1"
        client.upload_document.assert_awaited_once_with("moe.pdf", b"%PDF-1.7", "application/pdf", moe_id="MOE-7")
        assert start.await_args == call("tab-1", document_id="D1", auto_analyze=True)

    def test_non_pdf_is_rejected_before_processing(self, api, client, workflow) -> None:
        with patch.object(workflow, "start", AsyncMock(return_value="tab-1")) as start:
            response = api.post(f"{BASE}/tab-1/upload", files={"file": ("notes.txt", b"text", "text/plain")})

        assert response.status_code == 400
        client.upload_document.assert_not_awaited()
        start.assert_not_awaited()

    def test_backend_upload_failure_is_bad_gateway(self, api, client) -> None:
        client.upload_document.side_effect = BackendRequestError("Upload failed: 500 Internal Server Error", 500)

        response = api.post(f"{BASE}/tab-1/upload", files={"file": ("moe.pdf", b"%PDF-1.7", "application/pdf")})

        assert response.status_code == 502
        assert response.json()["detail"] == "Upload failed: 500 Internal Server Error"

    def test_stream_follows_auto_analysis_to_ready(self, api, client) -> None:
        client.upload_document.return_value = IngestResponse.model_validate({"documentId": "D1"})
        client.get_document_status.return_value = make_status("COMPLETED", 100)
        client.start_analysis.return_value = StartAnalysisResponse(analysis_id="A1", message="Analysis completed")
        client.get_analysis_report.return_value = make_report([make_outcome("145.A.30", "full")])

        upload = api.post(
            f"{BASE}/tab-1/upload",
            files={"file": ("moe.pdf", b"%PDF-1.7", "application/pdf")},
            data={"auto_analyze": "true"},
        )
        response = api.get(f"{BASE}/tab-1/stream")

        assert upload.status_code == 200
        assert '"phase": "READY"' in response.text
        client.start_analysis.assert_awaited()



class TestAnalysisRoute:
    def test_without_document_is_conflict(self, api, client) -> None:
        response = api.post(f"{BASE}/tab-1/analysis")

        assert response.status_code == 409
        client.start_analysis.assert_not_awaited()

    def test_backend_rejection_is_bad_gateway(self, api, client, backend) -> None:
        backend.records["tab-1"] = {DOCUMENT_KEY: "D1"}
        client.get_document_status.return_value = make_status("COMPLETED", 100)
        client.start_analysis.side_effect = BackendRequestError("Regulation not found", status_code=400)

        response = api.post(f"{BASE}/tab-1/analysis")

        assert response.status_code == 502
        assert response.json()["detail"] == "Regulation not found"

    def test_starts_analysis(self, api, client, backend) -> None:
        backend.records["tab-1"] = {DOCUMENT_KEY: "D1"}
        client.get_document_status.return_value = make_status("COMPLETED", 100)
        client.start_analysis.return_value = StartAnalysisResponse(analysis_id="A1", message="Analysis completed")
        client.get_analysis_report.return_value = make_report([make_outcome()])

        response = api.post(f"{BASE}/tab-1/analysis")

        assert response.status_code == 200
        assert response.json()["analysisId"] == "A1"


class TestOutcomeRoutes:
    def test_outcomes_without_analysis_is_conflict(self, api) -> None:
        response = api.get(f"{BASE}/tab-1/outcomes")

        assert response.status_code == 409

    def test_lists_outcomes(self, api, client, backend) -> None:
        seed_analysis(backend, client)

        response = api.get(f"{BASE}/tab-1/outcomes")

        assert response.status_code == 200
        body = response.json()
        assert [item["requirement_id"] for item in body["content"]] == ["145.A.30", "145.A.35"]
        assert body["content"][0]["evidence"][0]["moe_paragraph_id"] == 0
        assert body["total_elements"] == 2

    def test_status_filter_is_forwarded(self, api, client, backend) -> None:
        seed_analysis(backend, client)

        response = api.get(f"{BASE}/tab-1/outcomes", params={"status": "partial", "page": 3})

        assert response.status_code == 200
        query = client.get_outcomes_page.await_args.args[0]
        assert query.status_filter is ComplianceStatus.PARTIAL
        assert query.page_index == 0

    def test_counts(self, api, client, backend) -> None:
        seed_analysis(backend, client)

        response = api.get(f"{BASE}/tab-1/counts")

        assert response.status_code == 200
        assert response.json() == {"full": 1, "partial": 1, "non": 0}

    def test_toggle_viewed(self, api, client, backend) -> None:
        seed_analysis(backend, client)

        first = api.post(f"{BASE}/tab-1/outcomes/145.A.30/viewed")
        second = api.post(f"{BASE}/tab-1/outcomes/145.A.30/viewed")

        assert first.json() == {"requirement_id": "145.A.30", "viewed": True}
        assert second.json()["viewed"] is False

    def test_reset_session(self, api, client, backend) -> None:
        seed_analysis(backend, client)
        api.get(f"{BASE}/tab-1/progress")

        response = api.delete(f"{BASE}/tab-1")

        assert response.status_code == 200
        assert response.json()["phase"] == "IDLE"
        assert "tab-1" not in backend.records
