from __future__ import annotations

from typing import Dict, Optional, TypedDict


class WorkflowState(TypedDict, total=False):
    session_key: str
    file_path: Optional[str]
    file_name: Optional[str]
    moe_id: Optional[str]
    auto_analyze: bool
    phase: str
    document_id: Optional[str]
    analysis_id: Optional[str]
    counts: Optional[Dict[str, int]]
    error: Optional[str]
    started_at: float
    processing_time_ms: Optional[int]
