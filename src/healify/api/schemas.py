"""
Request and response models for the healing API.

Fields are snake_case in Python and camelCase on the wire; requests accept
either spelling.
"""

from datetime import datetime
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.models import ReviewAction, TestOutcome


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =================== Projects and runs ===================

class ProjectCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    api_key: Optional[str] = Field(None, min_length=8)
    owner_id: Optional[str] = None


class ProjectResponse(CamelModel):
    id: str
    name: str
    api_key: str
    owner_id: Optional[str] = None
    created_at: datetime


class BeginRunRequest(CamelModel):
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    triggered_by: str = "api"
    job_id: Optional[str] = None


class FailRunRequest(CamelModel):
    reason: Optional[str] = None


class RunResponse(CamelModel):
    """Run aggregates."""
    id: str
    project_id: str
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    triggered_by: str
    status: str
    total_tests: int
    passed_tests: int
    failed_tests: int
    healed_tests: int
    job_id: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration: Optional[float] = None
    failure_reason: Optional[str] = None


# =================== Results ===================

class ReportResultRequest(CamelModel):
    test_name: str = Field(..., min_length=1)
    outcome: TestOutcome
    selector: Optional[str] = None
    error_message: Optional[str] = None
    dom_snapshot: Optional[str] = None
    test_file: Optional[str] = None
    changed_files: Optional[List[str]] = None


class ReportAckResponse(CamelModel):
    run_id: str
    run_status: str
    test_name: str
    outcome: str
    status: Optional[str] = None
    healed_selector: Optional[str] = None
    confidence: Optional[float] = None
    reason_code: Optional[str] = None
    event_id: Optional[str] = None
    duplicate: bool = False


class IngestRequest(CamelModel):
    """A single failure pushed by a CI job."""
    api_key: Optional[str] = None
    test_name: str = Field(..., min_length=1)
    test_file: Optional[str] = None
    failed_selector: Optional[str] = None
    error_message: str = ""
    dom_snapshot: Optional[str] = None
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    changed_files: Optional[List[str]] = None


class IngestResponse(CamelModel):
    test_run_id: str
    status: Optional[str] = None
    healed_selector: Optional[str] = None
    confidence: Optional[float] = None
    reason_code: Optional[str] = None
    event_id: Optional[str] = None
    duplicate: bool = False


class ScreenshotRequest(CamelModel):
    path: str = Field(..., min_length=1)
    test_name: Optional[str] = None
    kind: str = "error"


class ScreenshotResponse(CamelModel):
    id: str
    run_id: str
    test_name: Optional[str] = None
    kind: str
    path: str
    created_at: datetime


# =================== Healing events ===================

class ScoreBreakdownResponse(CamelModel):
    terms: Dict[str, float] = Field(default_factory=dict)
    weights: Dict[str, float] = Field(default_factory=dict)


class CandidateResponse(CamelModel):
    path: str
    tag: str
    score: float
    depth: int
    document_index: int
    element_id: str = ""
    classes: List[str] = Field(default_factory=list)
    attributes: Dict[str, str] = Field(default_factory=dict)
    text: str = ""
    breakdown: ScoreBreakdownResponse
    suggested_selector: Optional[str] = None


class HealingEventResponse(CamelModel):
    id: str
    run_id: str
    test_name: str
    test_file: Optional[str] = None
    original_selector: str
    error_message: str
    snapshot_ref: Optional[str] = None
    selector_type: str
    confidence: float
    healed_selector: Optional[str] = None
    new_selector_type: Optional[str] = None
    status: str
    reason_code: Optional[str] = None
    strategy: Optional[str] = None
    element_path: Optional[str] = None
    candidates: List[CandidateResponse] = Field(default_factory=list)
    action_taken: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None
    created_at: datetime


class EventSummary(CamelModel):
    auto_healed: int = 0
    manual_healed: int = 0
    needs_review: int = 0
    bug_detected: int = 0
    ignored: int = 0
    total: int = 0


class EventListResponse(CamelModel):
    run_id: str
    events: List[HealingEventResponse]
    summary: EventSummary


class ReviewRequest(CamelModel):
    action: ReviewAction
    selector: Optional[str] = None
    candidate_index: Optional[int] = Field(None, ge=0)
    applied_by: Optional[str] = None


class ReviewResponse(CamelModel):
    event: HealingEventResponse
    run: RunResponse


# =================== Analysis ===================

class FragilityItem(CamelModel):
    test_name: str
    fragility_score: float
    observed_runs: int
    healing_events: int
    last_healed_at: Optional[datetime] = None


class FragilityResponse(CamelModel):
    project_id: str
    window: int
    tests: List[FragilityItem]


class SelectorAnalyzeRequest(CamelModel):
    selectors: List[str] = Field(..., min_length=1, max_length=500)


class AnalyzedSelectorResponse(CamelModel):
    selector: str
    selector_type: str
    score: float
    recommendation: Optional[str] = None


class ImpactRequest(CamelModel):
    changed_files: List[str] = Field(default_factory=list)


class ImpactResponse(CamelModel):
    changed_files: List[str]
    impacted_tests: List[str]
    risk_score: float
    risk_level: str
    high_risk_files: List[str]
    ui_change_detected: bool
    summary: str
    predicted_healing_need: bool


class MetricsResponse(CamelModel):
    """Response model for metrics data."""
    timestamp: datetime
    metrics: Dict[str, Any]
