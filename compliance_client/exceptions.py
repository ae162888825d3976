from __future__ import annotations

from typing import Optional

import httpx


class ComplianceClientError(Exception):
    """Base error for the compliance client."""


class ConfigurationError(ComplianceClientError):
    """Required configuration is missing; never retried."""


class InvalidFileError(ComplianceClientError):
    """The file was rejected before upload (type or size)."""


class SessionNotHydratedError(ComplianceClientError):
    """Session identities were read before the durable record was loaded."""


class NoActiveDocumentError(ComplianceClientError):
    """An operation needs a current document identity and there is none."""


class NoActiveAnalysisError(ComplianceClientError):
    """An operation needs a current analysis identity and there is none."""


class DocumentNotReadyError(ComplianceClientError):
    """Analysis was requested before document ingestion completed."""


class BackendRequestError(ComplianceClientError):
    """Transport failure or non-2xx response from the backend."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "BackendRequestError":
        message = _server_message(response)
        if not message:
            message = f"Request failed: {response.status_code} {response.reason_phrase}"
        error_cls = BackendNotFoundError if response.status_code == 404 else cls
        return error_cls(message, status_code=response.status_code)


class BackendNotFoundError(BackendRequestError):
    pass


class ProcessingFailedError(ComplianceClientError):
    def __init__(self, message: str, document_id: str):
        super().__init__(message)
        self.message = message
        self.document_id = document_id


class AnalysisFailedError(ComplianceClientError):
    def __init__(self, message: str, analysis_id: str):
        super().__init__(message)
        self.message = message
        self.analysis_id = analysis_id


class PollingTimeoutError(ComplianceClientError):
    """A polling loop hit its attempt or wall-clock bound."""


class PollingCancelledError(ComplianceClientError):
    """Raised to waiters of a loop that was cancelled."""


def _server_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    if isinstance(payload, dict):
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return ""
