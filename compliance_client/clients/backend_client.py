from __future__ import annotations

import logging
from typing import Any, BinaryIO, Dict, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError

from compliance_client.exceptions import BackendRequestError
from compliance_client.models.schemas import (
    AnalysisReport,
    DocumentStatus,
    IngestResponse,
    OutcomePage,
    PageQuery,
    StartAnalysisResponse,
)
from settings import AppSettings

FileContent = Union[bytes, BinaryIO]
ModelT = TypeVar("ModelT", bound=BaseModel)


class ComplianceBackendClient:
    def __init__(self, settings: AppSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.backend.base_url.rstrip("/")
        self.documents_path = settings.backend.documents_path.rstrip("/")
        self.analysis_path = settings.backend.analysis_path.rstrip("/")
        self.logger = logging.getLogger(__name__)
        self.verbose_io = settings.logging.log_external_io
        self._transport = transport

    async def _request(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            self.logger.warning("Backend request failed", extra={"method": method, "path": path, "error": str(exc)})
            raise BackendRequestError(f"Request to {path} failed: {exc}") from exc
        if response.is_error:
            error = BackendRequestError.from_response(response)
            self.logger.info(
                "Backend returned error",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise error
        return response

    def _json(self, response: httpx.Response, label: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendRequestError(f"{label} returned invalid JSON", status_code=response.status_code) from exc
        if self.verbose_io:
            self.logger.info(f"{label} response", extra={"response": data})
        return data

    def _parse(self, model: Type[ModelT], response: httpx.Response, label: str) -> ModelT:
        data = self._json(response, label)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            self.logger.warning(f"{label} payload is malformed", extra={"error_count": exc.error_count()})
            raise BackendRequestError(f"{label} response is malformed", status_code=response.status_code) from exc

    async def upload_document(
        self,
        file_name: str,
        content: FileContent,
        content_type: str = "application/pdf",
        moe_id: Optional[str] = None,
    ) -> IngestResponse:
        data = {"moeId": moe_id} if moe_id else None
        files = {"file": (file_name, content, content_type)}
        self.logger.info("Uploading document", extra={"file_name": file_name, "moe_id": moe_id})
        response = await self._request(
            "POST",
            self.documents_path,
            timeout=self.settings.backend.upload_timeout_seconds,
            data=data,
            files=files,
        )
        return self._parse(IngestResponse, response, "Upload")

    async def get_document_status(self, document_id: str) -> DocumentStatus:
        response = await self._request(
            "GET",
            f"{self.documents_path}/{document_id}/status",
            timeout=self.settings.backend.timeout_seconds,
        )
        return self._parse(DocumentStatus, response, "Document status")

    async def start_analysis(
        self,
        document_id: str,
        regulation_id: Optional[str] = None,
        regulation_version: Optional[str] = None,
    ) -> StartAnalysisResponse:
        params = {"moeId": document_id}
        if regulation_id:
            params["regulationId"] = regulation_id
        body = {"regulationVersion": regulation_version} if regulation_version else None
        self.logger.info(
            "Starting analysis",
            extra={"moe_id": document_id, "regulation_id": regulation_id or "auto"},
        )
        response = await self._request(
            "POST",
            self.analysis_path,
            timeout=self.settings.backend.analysis_timeout_seconds,
            params=params,
            json=body,
        )
        result = self._parse(StartAnalysisResponse, response, "Start analysis")
        if not result.analysis_id:
            raise BackendRequestError(result.message or "Analysis start returned no analysis id", response.status_code)
        return result

    async def get_analysis_report(self, analysis_id: str) -> AnalysisReport:
        response = await self._request(
            "GET",
            f"{self.analysis_path}/{analysis_id}",
            timeout=self.settings.backend.timeout_seconds,
        )
        return self._parse(AnalysisReport, response, "Analysis report")

    async def get_outcomes_page(self, query: PageQuery) -> OutcomePage:
        params: Dict[str, Any] = {
            "page": query.page_index,
            "size": query.page_size,
            "sort": "requirementId",
        }
        if query.status_filter is not None:
            params["complianceStatus"] = query.status_filter.value
        if query.finding_level_filter:
            params["findingLevel"] = query.finding_level_filter
        response = await self._request(
            "GET",
            f"{self.analysis_path}/{query.analysis_id}/outcomes",
            timeout=self.settings.backend.timeout_seconds,
            params=params,
        )
        return self._parse(OutcomePage, response, "Outcomes page")
