"""Error taxonomy for the healing engine and run orchestrator."""

from typing import Optional


class HealingError(Exception):
    """Base class for all healing errors."""

    code = "HEALING_ERROR"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SnapshotTooLarge(HealingError):
    """The DOM snapshot exceeds the configured size bound."""

    code = "SNAPSHOT_TOO_LARGE"

    def __init__(self, size: int, limit: int):
        super().__init__(f"Snapshot is {size} bytes, limit is {limit} bytes")
        self.size = size
        self.limit = limit


class InvalidSnapshot(HealingError):
    """The snapshot is not text."""

    code = "INVALID_SNAPSHOT"


class UnsupportedSelectorSyntax(HealingError):
    """The selector uses syntax outside the supported subset."""

    code = "UNSUPPORTED_SELECTOR"

    def __init__(self, selector: str, reason: str, position: Optional[int] = None):
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Unsupported selector {selector!r}{where}: {reason}")
        self.selector = selector
        self.reason = reason
        self.position = position


class NoCandidatesFound(HealingError):
    """Nothing in the snapshot resembles the lost element."""

    code = "NO_CANDIDATES"


class RunNotFound(HealingError):
    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        super().__init__(f"Test run {run_id} not found")
        self.run_id = run_id


class ProjectNotFound(HealingError):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class HealingEventNotFound(HealingError):
    code = "HEALING_EVENT_NOT_FOUND"

    def __init__(self, event_id: str):
        super().__init__(f"Healing event {event_id} not found")
        self.event_id = event_id


class RunNotActive(HealingError):
    """The run is already in a terminal status."""

    code = "RUN_NOT_ACTIVE"

    def __init__(self, run_id: str, status: str):
        super().__init__(f"Test run {run_id} is not active (status {status})")
        self.run_id = run_id
        self.status = status


class InvalidTransition(HealingError):
    """A healing event cannot move between the given statuses."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"Cannot move healing event from {current} to {target}{detail}")
        self.current = current
        self.target = target


class DuplicateReport(HealingError):
    """A result for this (run, test name) pair is already recorded.

    Raised by repositories and absorbed by the orchestrator.
    """

    code = "DUPLICATE_REPORT"

    def __init__(self, run_id: str, test_name: str):
        super().__init__(f"Result for {test_name!r} already recorded in run {run_id}")
        self.run_id = run_id
        self.test_name = test_name


class PersistenceFailure(HealingError):
    """Storage-layer fault. Nothing from the failed write is visible."""

    code = "PERSISTENCE_FAILURE"
    retryable = True
