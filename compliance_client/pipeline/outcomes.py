from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from compliance_client.clients.backend_client import ComplianceBackendClient
from compliance_client.exceptions import BackendRequestError, NoActiveAnalysisError
from compliance_client.models.schemas import (
    ComplianceOutcome,
    ComplianceStatus,
    Evidence,
    PageQuery,
    PageResult,
    StatusCounts,
)

logger = logging.getLogger(__name__)

EvidenceItem = Union[str, Mapping[str, Any], Evidence]


def normalize_evidence(items: Optional[Iterable[EvidenceItem]]) -> List[Evidence]:
    """Bring plain-string and structured evidence into one shape.

    Strings become excerpts whose paragraph id is their position. Applying
    this to its own output returns an equal list.
    """
    normalized: List[Evidence] = []
    for idx, item in enumerate(items or []):
        if isinstance(item, Evidence):
            normalized.append(item)
        elif isinstance(item, str):
            normalized.append(Evidence(moe_paragraph_id=idx, relevant_excerpt=item, full_paragraph_excerpt=item))
        elif isinstance(item, Mapping):
            data = dict(item)
            data.setdefault("moe_paragraph_id", idx)
            excerpt = data.get("relevant_excerpt") or ""
            data["relevant_excerpt"] = excerpt
            if not data.get("full_paragraph_excerpt"):
                data["full_paragraph_excerpt"] = excerpt
            normalized.append(Evidence.model_validate(data))
        else:
            logger.warning("Skipping unsupported evidence item", extra={"item_type": type(item).__name__})
    return normalized


def normalize_outcome(raw: Union[Mapping[str, Any], ComplianceOutcome]) -> ComplianceOutcome:
    if isinstance(raw, ComplianceOutcome):
        return raw
    return ComplianceOutcome(
        requirement_id=str(raw.get("requirement_id") or raw.get("requirementId") or ""),
        status=ComplianceStatus(str(raw.get("compliance_status") or raw.get("complianceStatus")).lower()),
        finding_level=raw.get("finding_level") or raw.get("findingLevel") or "",
        justification=raw.get("justification") or "",
        evidence=normalize_evidence(raw.get("evidence")),
        missing_elements=list(raw.get("missing_elements") or raw.get("missingElements") or []),
        recommended_actions=list(raw.get("recommended_actions") or raw.get("recommendedActions") or []),
    )


def tally_statuses(outcomes: Iterable[ComplianceOutcome]) -> StatusCounts:
    counts = StatusCounts()
    for outcome in outcomes:
        if outcome.status is ComplianceStatus.FULL:
            counts.full += 1
        elif outcome.status is ComplianceStatus.PARTIAL:
            counts.partial += 1
        elif outcome.status is ComplianceStatus.NON:
            counts.non += 1
    return counts


class RequestSequencer:
    """Last-request-wins guard for one query channel."""

    def __init__(self) -> None:
        self.latest = 0

    def issue(self) -> int:
        self.latest += 1
        return self.latest

    def is_current(self, sequence: int) -> bool:
        return sequence == self.latest


class OutcomeQueryService:
    """Browses the outcomes of one analysis at a time.

    ``query`` is the most recently issued page query, so rapid filter or page
    changes build on each other; ``page.query`` is the query whose result is
    on display. A failed current request falls back to the displayed query.
    """

    def __init__(self, client: ComplianceBackendClient, page_size: int = 20):
        self.client = client
        self.page_size = page_size
        self.query: Optional[PageQuery] = None
        self.page: Optional[PageResult] = None
        self.counts: Optional[StatusCounts] = None
        self._page_channel = RequestSequencer()
        self._counts_channel = RequestSequencer()
        self._counts_cache: Dict[str, StatusCounts] = {}
        self._viewed: Dict[str, Set[str]] = {}

    def open(self, analysis_id: str) -> PageQuery:
        if self.query is None or self.query.analysis_id != analysis_id:
            self.query = PageQuery(analysis_id=analysis_id, page_size=self.page_size)
            self.page = None
            self.counts = self._counts_cache.get(analysis_id)
        return self.query

    def _current_query(self) -> PageQuery:
        if self.query is None:
            raise NoActiveAnalysisError("No analysis is open for browsing")
        return self.query

    async def fetch_page(self, query: PageQuery) -> Optional[PageResult]:
        """Fetch one page; returns None when a newer query superseded this one."""
        sequence = self._page_channel.issue()
        self.query = query
        try:
            raw = await self.client.get_outcomes_page(query)
        except BackendRequestError:
            if not self._page_channel.is_current(sequence):
                return None
            if self.page is not None:
                self.query = self.page.query
            raise
        if not self._page_channel.is_current(sequence):
            logger.debug(
                "Dropping stale outcomes page",
                extra={"analysis_id": query.analysis_id, "page_index": query.page_index, "sequence": sequence},
            )
            return None

        if raw.total_elements > 0 and raw.total_pages > 0 and query.page_index >= raw.total_pages:
            return await self.fetch_page(query.with_page(raw.total_pages - 1))

        result = PageResult(
            query=query,
            content=[normalize_outcome(item) for item in raw.content[: query.page_size]],
            total_elements=raw.total_elements,
            total_pages=raw.total_pages,
            first=raw.first,
            last=raw.last,
        )
        self.page = result
        return result

    async def refresh(self) -> Optional[PageResult]:
        return await self.fetch_page(self._current_query())

    async def go_to_page(self, page_index: int) -> Optional[PageResult]:
        return await self.fetch_page(self._current_query().with_page(max(0, page_index)))

    async def apply_filters(
        self,
        status_filter: Optional[ComplianceStatus] = None,
        finding_level_filter: Optional[str] = None,
    ) -> Optional[PageResult]:
        return await self.fetch_page(self._current_query().with_filters(status_filter, finding_level_filter))

    async def set_status_filter(self, status_filter: Optional[ComplianceStatus]) -> Optional[PageResult]:
        current = self._current_query()
        return await self.apply_filters(status_filter, current.finding_level_filter)

    async def set_finding_level_filter(self, finding_level: Optional[str]) -> Optional[PageResult]:
        current = self._current_query()
        return await self.apply_filters(current.status_filter, finding_level)

    async def load_counts(self, analysis_id: str, refresh: bool = False) -> Optional[StatusCounts]:
        """Tally the unfiltered outcome set; failures degrade to no counts."""
        if not refresh and analysis_id in self._counts_cache:
            self.counts = self._counts_cache[analysis_id]
            return self.counts
        sequence = self._counts_channel.issue()
        try:
            report = await self.client.get_analysis_report(analysis_id)
            counts = tally_statuses(normalize_outcome(item) for item in report.compliance)
        except (BackendRequestError, ValueError) as exc:
            logger.warning("Failed to fetch status counts", extra={"analysis_id": analysis_id, "error": str(exc)})
            if self._counts_channel.is_current(sequence):
                self.counts = None
            return None
        self._counts_cache[analysis_id] = counts
        if not self._counts_channel.is_current(sequence):
            return None
        self.counts = counts
        return counts

    def toggle_viewed(self, analysis_id: str, requirement_id: str) -> bool:
        viewed = self._viewed.setdefault(analysis_id, set())
        if requirement_id in viewed:
            viewed.discard(requirement_id)
            return False
        viewed.add(requirement_id)
        return True

    def is_viewed(self, analysis_id: str, requirement_id: str) -> bool:
        return requirement_id in self._viewed.get(analysis_id, set())

    def reset(self) -> None:
        self._page_channel.issue()
        self._counts_channel.issue()
        self.query = None
        self.page = None
        self.counts = None
        self._counts_cache.clear()
        self._viewed.clear()
