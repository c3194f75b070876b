"""Core data models for the selector self-healing system."""

from .healing_models import (
    CandidateMatch,
    ElementHistory,
    FragilityReport,
    HealingConfiguration,
    HealingDecision,
    HealingEvent,
    HealingStatus,
    Project,
    ReasonCode,
    ReviewAction,
    ScoreBreakdown,
    Screenshot,
    SelectorType,
    TestOutcome,
    TestResult,
    TestRun,
    TestRunStatus,
)

__all__ = [
    "CandidateMatch",
    "ElementHistory",
    "FragilityReport",
    "HealingConfiguration",
    "HealingDecision",
    "HealingEvent",
    "HealingStatus",
    "Project",
    "ReasonCode",
    "ReviewAction",
    "ScoreBreakdown",
    "Screenshot",
    "SelectorType",
    "TestOutcome",
    "TestResult",
    "TestRun",
    "TestRunStatus",
]
