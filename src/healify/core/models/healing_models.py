"""Data models for the selector self-healing system."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any
from enum import Enum


class TestRunStatus(Enum):
    """Lifecycle status of a test run."""
    __test__ = False

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TestRunStatus.COMPLETED, TestRunStatus.FAILED)


class TestOutcome(Enum):
    """Outcome of a single test as reported by the test runner."""
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class HealingStatus(Enum):
    """Decision status of a healing event."""
    PENDING = "PENDING"
    HEALED_AUTO = "HEALED_AUTO"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    BUG_DETECTED = "BUG_DETECTED"
    IGNORED = "IGNORED"
    HEALED_MANUAL = "HEALED_MANUAL"

    @property
    def is_terminal(self) -> bool:
        return self not in (HealingStatus.PENDING, HealingStatus.NEEDS_REVIEW)

    @property
    def is_healed(self) -> bool:
        return self in (HealingStatus.HEALED_AUTO, HealingStatus.HEALED_MANUAL)


class ReasonCode(Enum):
    """Why a healing decision came out the way it did."""
    HIGH_CONFIDENCE_MATCH = "HIGH_CONFIDENCE_MATCH"
    AMBIGUOUS_MATCH = "AMBIGUOUS_MATCH"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    NO_CANDIDATES = "NO_CANDIDATES"
    ELEMENT_REMOVED = "ELEMENT_REMOVED"
    NO_STABLE_SELECTOR = "NO_STABLE_SELECTOR"
    SNAPSHOT_TOO_LARGE = "SNAPSHOT_TOO_LARGE"
    INVALID_SNAPSHOT = "INVALID_SNAPSHOT"
    MISSING_SNAPSHOT = "MISSING_SNAPSHOT"
    UNSUPPORTED_SELECTOR = "UNSUPPORTED_SELECTOR"
    MISSING_SELECTOR = "MISSING_SELECTOR"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class SelectorType(Enum):
    """Locator families recognised by the robustness analyzer."""
    TESTID = "TESTID"
    ID = "ID"
    CLASS = "CLASS"
    CSS = "CSS"
    ROLE = "ROLE"
    TEXT = "TEXT"
    XPATH = "XPATH"
    UNKNOWN = "UNKNOWN"


class ReviewAction(Enum):
    """Human review actions on a NEEDS_REVIEW event."""
    ACCEPT = "accept"
    REJECT = "reject"
    IGNORE = "ignore"
    MARK_BUG = "mark_bug"


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Project:
    """A client application under test. The credential is opaque here."""
    name: str
    api_key: str
    owner_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class TestRun:
    """One execution batch for a project."""
    __test__ = False

    project_id: str
    branch: Optional[str] = None
    commit_sha: Optional[str] = None
    triggered_by: str = "api"
    status: TestRunStatus = TestRunStatus.PENDING
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    healed_tests: int = 0
    job_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        """Run duration in seconds, once the run is terminal."""
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "branch": self.branch,
            "commit_sha": self.commit_sha,
            "triggered_by": self.triggered_by,
            "status": self.status.value,
            "total_tests": self.total_tests,
            "passed_tests": self.passed_tests,
            "failed_tests": self.failed_tests,
            "healed_tests": self.healed_tests,
            "job_id": self.job_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "failure_reason": self.failure_reason,
        }


@dataclass
class TestResult:
    """A single reported outcome, unique per (run, test name)."""
    __test__ = False

    run_id: str
    test_name: str
    outcome: TestOutcome
    reported_at: datetime = field(default_factory=datetime.now)


@dataclass
class ScoreBreakdown:
    """Per-term similarity values (each in [0, 1]) and the weights applied."""
    terms: Dict[str, float] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"terms": dict(self.terms), "weights": dict(self.weights)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScoreBreakdown':
        return cls(terms=dict(data.get("terms", {})), weights=dict(data.get("weights", {})))


@dataclass
class CandidateMatch:
    """A scored element produced by the matcher. Never persisted on its own."""
    path: str
    tag: str
    score: float
    depth: int
    document_index: int
    element_id: str = ""
    classes: List[str] = field(default_factory=list)
    attributes: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)
    suggested_selector: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "tag": self.tag,
            "score": self.score,
            "depth": self.depth,
            "document_index": self.document_index,
            "element_id": self.element_id,
            "classes": list(self.classes),
            "attributes": dict(self.attributes),
            "text": self.text,
            "breakdown": self.breakdown.to_dict(),
            "suggested_selector": self.suggested_selector,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CandidateMatch':
        data = data.copy()
        data["breakdown"] = ScoreBreakdown.from_dict(data.get("breakdown", {}))
        return cls(**data)


@dataclass
class ElementHistory:
    """What earlier runs know about the element a test targets."""
    last_known_path: Optional[str] = None
    consecutive_misses: int = 0
    ui_change_detected: bool = False

    @property
    def last_known_depth(self) -> Optional[int]:
        if not self.last_known_path:
            return None
        return len([seg for seg in self.last_known_path.split("/") if seg]) - 1


@dataclass
class HealingDecision:
    """Output of the healing pipeline for one failure."""
    status: HealingStatus
    confidence: float
    reason_code: ReasonCode
    healed_selector: Optional[str] = None
    strategy: Optional[str] = None
    candidates: List[CandidateMatch] = field(default_factory=list)
    element_path: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class HealingEvent:
    """One failure-and-decision record owned by a test run."""
    run_id: str
    test_name: str
    original_selector: str
    error_message: str = ""
    test_file: Optional[str] = None
    snapshot_ref: Optional[str] = None
    selector_type: SelectorType = SelectorType.UNKNOWN
    confidence: float = 0.0
    healed_selector: Optional[str] = None
    new_selector_type: Optional[SelectorType] = None
    status: HealingStatus = HealingStatus.PENDING
    reason_code: Optional[ReasonCode] = None
    strategy: Optional[str] = None
    element_path: Optional[str] = None
    candidates: List[CandidateMatch] = field(default_factory=list)
    action_taken: Optional[str] = None
    applied_by: Optional[str] = None
    applied_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for API responses and storage."""
        return {
            "id": self.id,
            "run_id": self.run_id,
            "test_name": self.test_name,
            "test_file": self.test_file,
            "original_selector": self.original_selector,
            "error_message": self.error_message,
            "snapshot_ref": self.snapshot_ref,
            "selector_type": self.selector_type.value,
            "confidence": self.confidence,
            "healed_selector": self.healed_selector,
            "new_selector_type": self.new_selector_type.value if self.new_selector_type else None,
            "status": self.status.value,
            "reason_code": self.reason_code.value if self.reason_code else None,
            "strategy": self.strategy,
            "element_path": self.element_path,
            "candidates": [c.to_dict() for c in self.candidates],
            "action_taken": self.action_taken,
            "applied_by": self.applied_by,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Screenshot:
    """Opaque artifact pointer attached to a run."""
    run_id: str
    path: str
    test_name: Optional[str] = None
    kind: str = "error"
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "test_name": self.test_name,
            "kind": self.kind,
            "path": self.path,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class FragilityReport:
    """Per-test stability summary over a trailing window of runs."""
    test_name: str
    fragility_score: float
    observed_runs: int
    healing_events: int
    last_healed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_name": self.test_name,
            "fragility_score": self.fragility_score,
            "observed_runs": self.observed_runs,
            "healing_events": self.healing_events,
            "last_healed_at": self.last_healed_at.isoformat() if self.last_healed_at else None,
        }


DEFAULT_WEIGHTS = {
    "tag": 0.15,
    "id": 0.25,
    "classes": 0.20,
    "attributes": 0.25,
    "text": 0.10,
    "structure": 0.05,
}

DEFAULT_TEST_ID_ATTRIBUTES = ["data-testid", "data-test-id", "data-test", "data-cy", "data-qa"]


@dataclass
class HealingConfiguration:
    """Tunable thresholds and weights for the healing engine."""
    auto_heal_threshold: float = 0.85
    review_threshold: float = 0.5
    candidate_floor: float = 0.05
    review_candidates: int = 3
    ignore_after_consecutive_misses: int = 3
    max_candidates: int = 10
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    test_id_attributes: List[str] = field(default_factory=lambda: list(DEFAULT_TEST_ID_ATTRIBUTES))
    fragility_window: int = 50

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "auto_heal_threshold": self.auto_heal_threshold,
            "review_threshold": self.review_threshold,
            "candidate_floor": self.candidate_floor,
            "review_candidates": self.review_candidates,
            "ignore_after_consecutive_misses": self.ignore_after_consecutive_misses,
            "max_candidates": self.max_candidates,
            "weights": dict(self.weights),
            "test_id_attributes": list(self.test_id_attributes),
            "fragility_window": self.fragility_window,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealingConfiguration':
        """Create configuration from dictionary."""
        data = data.copy()
        if "weights" in data:
            weights = dict(DEFAULT_WEIGHTS)
            weights.update(data["weights"] or {})
            data["weights"] = weights
        if "test_id_attributes" in data:
            data["test_id_attributes"] = list(data["test_id_attributes"] or [])
        return cls(**data)
