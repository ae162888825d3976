from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessingStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ComplianceStatus(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NON = "non"


class SessionPhase(str, Enum):
    IDLE = "IDLE"
    UPLOADING = "UPLOADING"
    INGESTING = "INGESTING"
    INGESTED = "INGESTED"
    ANALYZING = "ANALYZING"
    READY = "READY"
    FAILED = "FAILED"


class ApiModel(BaseModel):
    """Backend payloads use camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class IngestResponse(ApiModel):
    document_id: str = Field(alias="documentId")
    file_name: str = Field(default="", alias="fileName")
    file_size: int = Field(default=0, alias="fileSize")
    paragraph_count: int = Field(default=0, alias="paragraphCount")
    status: ProcessingStatus = Field(default=ProcessingStatus.PROCESSING)
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class DocumentStatus(ApiModel):
    document_id: str = Field(alias="documentId")
    status: ProcessingStatus
    total_paragraphs: int = Field(default=0, alias="totalParagraphs")
    embedded_paragraphs: int = Field(default=0, alias="embeddedParagraphs")
    embedding_complete: bool = Field(default=False, alias="embeddingComplete")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class StartAnalysisResponse(ApiModel):
    analysis_id: Optional[str] = Field(default=None, alias="analysisId")
    message: str = Field(default="")


class AnalysisReport(ApiModel):
    analysis_id: str = Field(alias="analysisId")
    moe_id: Optional[str] = Field(default=None, alias="moeId")
    regulation_version: Optional[str] = Field(default=None, alias="regulationVersion")
    total_requirements: int = Field(default=0, alias="totalRequirements")
    status: Optional[str] = None
    compliance: List[Dict[str, Any]] = Field(default_factory=list)


class OutcomePage(ApiModel):
    """Raw Spring Data page of outcome records, before normalization."""

    content: List[Dict[str, Any]] = Field(default_factory=list)
    total_elements: int = Field(default=0, alias="totalElements")
    total_pages: int = Field(default=0, alias="totalPages")
    size: int = 0
    number: int = 0
    first: bool = True
    last: bool = True


class Evidence(BaseModel):
    moe_paragraph_id: int
    relevant_excerpt: str = Field(default="")
    full_paragraph_excerpt: str = Field(default="")
    similarity_score: float = Field(default=0.0)
    rerank_score: float = Field(default=0.0)


class ComplianceOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    requirement_id: str
    status: ComplianceStatus
    finding_level: str = Field(default="")
    justification: str = Field(default="")
    evidence: List[Evidence] = Field(default_factory=list)
    missing_elements: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)


class PageQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    analysis_id: str
    page_index: int = Field(default=0, ge=0)
    page_size: int = Field(default=20, ge=1)
    status_filter: Optional[ComplianceStatus] = None
    finding_level_filter: Optional[str] = None

    def with_page(self, page_index: int) -> "PageQuery":
        return self.model_copy(update={"page_index": page_index})

    def with_filters(
        self,
        status_filter: Optional[ComplianceStatus] = None,
        finding_level_filter: Optional[str] = None,
    ) -> "PageQuery":
        # A filter change always restarts from the first page.
        return self.model_copy(
            update={
                "status_filter": status_filter,
                "finding_level_filter": finding_level_filter,
                "page_index": 0,
            }
        )


class PageResult(BaseModel):
    query: PageQuery
    content: List[ComplianceOutcome] = Field(default_factory=list)
    total_elements: int = 0
    total_pages: int = 0
    first: bool = True
    last: bool = True

    @property
    def page_index(self) -> int:
        return self.query.page_index

    @property
    def page_size(self) -> int:
        return self.query.page_size


class StatusCounts(BaseModel):
    full: int = 0
    partial: int = 0
    non: int = 0

    @property
    def total(self) -> int:
        return self.full + self.partial + self.non


class ProgressUpdate(BaseModel):
    document_id: str
    progress: int
    status: ProcessingStatus
    placeholder: bool = False
    error: Optional[str] = None


class ReadinessUpdate(BaseModel):
    analysis_id: str
    ready: bool
    attempts: int
    outcome_count: int = 0
    error: Optional[str] = None


class SessionSnapshot(BaseModel):
    session_key: str
    phase: SessionPhase = SessionPhase.IDLE
    progress: int = 0
    document_id: Optional[str] = None
    analysis_id: Optional[str] = None
    message: str = Field(default="")
    error: Optional[str] = None
