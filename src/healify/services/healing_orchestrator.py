"""
Test Run Orchestrator for the selector self-healing system.

Owns the lifecycle of test runs and is the only writer of healing events:

- begin / complete / fail runs
- accept result reports, running the healing engine synchronously for
  failures so the caller gets the repaired selector in the response
- guarantee at most one healing attempt per (run, test name) through a
  keyed lock plus the repository's uniqueness check
- apply human review decisions
"""

import asyncio
import secrets
import time
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Hashable, List, Optional, Tuple, Union

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import DuplicateReport, PersistenceFailure, RunNotActive
from ..core.logging_config import get_healing_logger
from ..core.metrics import MetricsCollector, get_metrics_collector
from ..core.models import (
    ElementHistory, FragilityReport, HealingConfiguration, HealingDecision, HealingEvent,
    HealingStatus, Project, ReasonCode, ReviewAction, Screenshot, TestOutcome,
    TestResult, TestRun, TestRunStatus,
)
from ..data_access.repository import HealingRepository
from ..data_access.snapshot_store import InMemorySnapshotStore, SnapshotStore, snapshot_name
from .fragility_analyzer import FragilityAnalyzer
from .git_impact_analyzer import GitImpactAnalyzer
from .healing_engine import HealingEngine
from .selector_analyzer import AnalyzedSelector, SelectorAnalyzer


logger = logging.getLogger(__name__)

# Reasons that count as "the selector found nothing usable" for the miss streak
MISS_REASONS = frozenset({
    ReasonCode.NO_CANDIDATES, ReasonCode.LOW_CONFIDENCE, ReasonCode.ELEMENT_REMOVED,
})

SUMMARY_KEYS = {
    HealingStatus.HEALED_AUTO: "autoHealed",
    HealingStatus.HEALED_MANUAL: "manualHealed",
    HealingStatus.NEEDS_REVIEW: "needsReview",
    HealingStatus.BUG_DETECTED: "bugDetected",
    HealingStatus.IGNORED: "ignored",
}


class KeyedLock:
    """Per-key asyncio locks; entries are dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, *key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class ReportAck:
    """Acknowledgment returned for every reported result."""
    run: TestRun
    test_name: str
    outcome: TestOutcome
    event: Optional[HealingEvent] = None
    duplicate: bool = False

    @property
    def status(self) -> Optional[HealingStatus]:
        return self.event.status if self.event else None

    @property
    def healed_selector(self) -> Optional[str]:
        if self.event and self.event.status.is_healed:
            return self.event.healed_selector
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run.id,
            "run_status": self.run.status.value,
            "test_name": self.test_name,
            "outcome": self.outcome.value,
            "status": self.status.value if self.status else None,
            "healed_selector": self.healed_selector,
            "confidence": self.event.confidence if self.event else None,
            "reason_code": self.event.reason_code.value if self.event and self.event.reason_code else None,
            "event_id": self.event.id if self.event else None,
            "duplicate": self.duplicate,
        }


def summarize_events(events: List[HealingEvent]) -> Dict[str, int]:
    """Counts of events per decision status, keyed for dashboards."""
    counts = Counter(event.status for event in events)
    summary = {key: counts.get(status, 0) for status, key in SUMMARY_KEYS.items()}
    summary["total"] = len(events)
    return summary


class TestRunOrchestrator:
    """Coordinates runs, result reports and healing decisions."""

    __test__ = False

    def __init__(self,
                 repository: HealingRepository,
                 engine: Optional[HealingEngine] = None,
                 snapshot_store: Optional[SnapshotStore] = None,
                 metrics: Optional[MetricsCollector] = None,
                 config: Optional[HealingConfiguration] = None,
                 settings: Optional[Settings] = None):
        """Initialize the orchestrator.

        Args:
            repository: Persistence port for runs, results and events
            engine: Healing pipeline; built from ``config`` when omitted
            snapshot_store: Where failure snapshots are kept
            metrics: Metrics collector; the process-wide one when omitted
            config: Healing thresholds and weights
            settings: Service settings (snapshot bound, history lookback)
        """
        self.settings = settings or default_settings
        self.config = config or (engine.config if engine else HealingConfiguration())
        self.repository = repository
        self.engine = engine or HealingEngine(self.config, self.settings.MAX_SNAPSHOT_BYTES)
        self.snapshot_store = snapshot_store or InMemorySnapshotStore()
        self.metrics = metrics or get_metrics_collector()
        self.selector_analyzer = SelectorAnalyzer(self.config.test_id_attributes)
        self.impact_analyzer = GitImpactAnalyzer()
        self.fragility_analyzer = FragilityAnalyzer(repository, self.config.fragility_window)
        self.locks = KeyedLock()
        self.logger = get_healing_logger("orchestrator")

    # =================== Projects ===================

    async def register_project(self, name: str, api_key: Optional[str] = None,
                               owner_id: Optional[str] = None) -> Project:
        """Create a project; an API key is generated when none is given."""
        project = Project(name=name, api_key=api_key or f"hfy_{secrets.token_urlsafe(24)}",
                          owner_id=owner_id)
        await self.repository.create_project(project)
        self.logger.info(f"Registered project {project.id} ({name})")
        return project

    async def authenticate(self, api_key: str) -> Optional[Project]:
        if not api_key:
            return None
        return await self.repository.get_project_by_api_key(api_key)

    # =================== Run lifecycle ===================

    async def begin_run(self, project_id: str, branch: Optional[str] = None,
                        commit_sha: Optional[str] = None, triggered_by: str = "api",
                        job_id: Optional[str] = None) -> TestRun:
        """Open a new PENDING run for a project."""
        run = TestRun(project_id=project_id, branch=branch, commit_sha=commit_sha,
                      triggered_by=triggered_by, job_id=job_id)
        await self.repository.create_run(run)
        get_healing_logger("orchestrator", run_id=run.id).info(
            f"Began run for project {project_id} on {branch or '-'}@{commit_sha or '-'}"
        )
        return run

    async def complete_run(self, run_id: str) -> TestRun:
        """Mark a run COMPLETED. Raises RunNotActive if it is already terminal."""
        run = await self.repository.finish_run(run_id, TestRunStatus.COMPLETED)
        self._log_run_finished(run)
        return run

    async def fail_run(self, run_id: str, reason: Optional[str] = None) -> TestRun:
        """Mark a run FAILED, e.g. when the run-level timeout expires."""
        run = await self.repository.finish_run(run_id, TestRunStatus.FAILED, reason)
        self._log_run_finished(run)
        return run

    async def get_run(self, run_id: str) -> TestRun:
        return await self.repository.get_run(run_id)

    async def attach_screenshot(self, run_id: str, path: str, test_name: Optional[str] = None,
                                kind: str = "error") -> Screenshot:
        """Attach an opaque artifact pointer to a run that is still active."""
        run = await self.repository.get_run(run_id)
        if run.status.is_terminal:
            raise RunNotActive(run_id, run.status.value)
        return await self.repository.add_screenshot(
            Screenshot(run_id=run_id, path=path, test_name=test_name, kind=kind)
        )

    async def list_screenshots(self, run_id: str) -> List[Screenshot]:
        await self.repository.get_run(run_id)
        return await self.repository.list_screenshots(run_id)

    # =================== Result reporting ===================

    async def report_result(self, run_id: str, test_name: str,
                            outcome: Union[TestOutcome, str],
                            selector: Optional[str] = None,
                            error_message: Optional[str] = None,
                            snapshot: Optional[Union[str, bytes]] = None,
                            test_file: Optional[str] = None,
                            changed_files: Optional[List[str]] = None) -> ReportAck:
        """
        Record the outcome of one test, healing it if it failed.

        A repeated report for the same (run, test name) returns the stored
        decision without running the pipeline again.

        Raises:
            RunNotFound: If the run does not exist
            RunNotActive: If the run is terminal and the test was never reported
            PersistenceFailure: If the result could not be stored; retryable
        """
        outcome = TestOutcome(outcome)
        if not test_name or not test_name.strip():
            raise ValueError("test_name must not be empty")

        log = get_healing_logger("orchestrator", run_id=run_id, test_name=test_name)

        async with self.locks.hold("report", run_id, test_name):
            existing = await self.repository.get_result(run_id, test_name)
            if existing is not None:
                return await self._duplicate_ack(run_id, test_name, existing, log)

            run = await self.repository.get_run(run_id)
            if run.status.is_terminal:
                raise RunNotActive(run_id, run.status.value)

            event = None
            if outcome is TestOutcome.FAILED:
                event = await self._heal_failure(run, test_name, selector, error_message,
                                                 snapshot, test_file, changed_files, log)

            result = TestResult(run_id=run_id, test_name=test_name, outcome=outcome)
            try:
                run = await self.repository.record_result(result, event)
            except DuplicateReport:
                stored = await self.repository.get_result(run_id, test_name)
                return await self._duplicate_ack(run_id, test_name, stored, log)
            except PersistenceFailure:
                self.metrics.record_persistence_failure("record_result")
                log.error("Failed to persist result and healing event", exc_info=True)
                raise

        self.metrics.record_result(outcome)
        if event is not None:
            log.info(f"Recorded {event.status.value} ({event.reason_code.value}, "
                     f"confidence {event.confidence:.3f})")
        return ReportAck(run=run, test_name=test_name, outcome=outcome, event=event)

    async def ingest(self, project_id: str, test_name: str,
                     failed_selector: Optional[str],
                     error_message: Optional[str] = None,
                     dom_snapshot: Optional[Union[str, bytes]] = None,
                     branch: Optional[str] = None,
                     commit_sha: Optional[str] = None,
                     test_file: Optional[str] = None,
                     changed_files: Optional[List[str]] = None) -> ReportAck:
        """
        Single-failure ingestion from a CI job.

        Reuses the active run for the same project, branch and commit, or
        begins a new one, then reports the failed test.
        """
        async with self.locks.hold("ingest", project_id, branch, commit_sha):
            run = await self.repository.find_active_run(project_id, branch, commit_sha)
            if run is None:
                run = await self.begin_run(project_id, branch, commit_sha, triggered_by="cli")

        return await self.report_result(
            run.id, test_name, TestOutcome.FAILED,
            selector=failed_selector,
            error_message=error_message,
            snapshot=dom_snapshot,
            test_file=test_file,
            changed_files=changed_files,
        )

    # =================== Human review ===================

    async def resolve_review(self, event_id: str, action: Union[ReviewAction, str],
                             selector: Optional[str] = None,
                             candidate_index: Optional[int] = None,
                             applied_by: Optional[str] = None) -> Tuple[HealingEvent, TestRun]:
        """
        Resolve a NEEDS_REVIEW event.

        Raises:
            HealingEventNotFound: If the event does not exist
            InvalidTransition: If the event is not awaiting review
            UnsupportedSelectorSyntax: If an explicit selector cannot be parsed
        """
        action = ReviewAction(action)
        async with self.locks.hold("review", event_id):
            event = await self.repository.get_event(event_id)
            reviewed = self.engine.policy.review(event, action, selector, candidate_index, applied_by)
            try:
                stored, run = await self.repository.apply_review(reviewed, event.status)
            except PersistenceFailure:
                self.metrics.record_persistence_failure("apply_review")
                self.logger.error(f"Failed to persist review of event {event_id}", exc_info=True)
                raise

        self.metrics.increment_counter("reviews_total", labels={"action": action.value})
        get_healing_logger("orchestrator", run_id=stored.run_id, test_name=stored.test_name).info(
            f"Review {action.value} moved event {event_id} to {stored.status.value}"
        )
        return stored, run

    # =================== Reporting ===================

    async def list_events(self, run_id: str) -> Tuple[List[HealingEvent], Dict[str, int]]:
        """Events of a run together with their summary counts."""
        await self.repository.get_run(run_id)
        events = await self.repository.list_events(run_id)
        return events, summarize_events(events)

    async def get_event(self, event_id: str) -> HealingEvent:
        return await self.repository.get_event(event_id)

    async def load_snapshot(self, event_id: str) -> Optional[bytes]:
        event = await self.repository.get_event(event_id)
        if not event.snapshot_ref:
            return None
        return await self.snapshot_store.load(event.snapshot_ref)

    async def fragility(self, project_id: str) -> List[FragilityReport]:
        return await self.fragility_analyzer.analyze(project_id)

    async def analyze_project_selectors(self, project_id: str) -> List[AnalyzedSelector]:
        """Robustness of every selector seen in the project's recent healing events."""
        await self.repository.get_project(project_id)
        selectors = []
        for run in await self.repository.list_runs(project_id, self.config.fragility_window):
            for event in await self.repository.list_events(run.id):
                selectors.append(event.original_selector)
                if event.healed_selector:
                    selectors.append(event.healed_selector)
        return self.selector_analyzer.analyze_many(selectors)

    # =================== Helpers ===================

    async def _heal_failure(self, run: TestRun, test_name: str, selector: Optional[str],
                            error_message: Optional[str], snapshot: Optional[Union[str, bytes]],
                            test_file: Optional[str], changed_files: Optional[List[str]],
                            log) -> HealingEvent:
        history = await self.load_history(run.project_id, test_name, changed_files)

        start_time = time.time()
        # Parsing and scoring are CPU bound; keep the loop free for other keys.
        decision = await asyncio.to_thread(self.engine.heal, snapshot, selector, history)
        duration = time.time() - start_time
        self.metrics.record_decision(decision.status, decision.reason_code,
                                     decision.confidence, duration)

        snapshot_ref = None
        if snapshot and decision.reason_code is not ReasonCode.SNAPSHOT_TOO_LARGE:
            snapshot_ref = await self.snapshot_store.save(snapshot_name(run.id, test_name), snapshot)

        log.debug(f"Decision {decision.status.value} in {duration:.4f}s")
        return self._build_event(run, test_name, selector, error_message, test_file,
                                 snapshot_ref, decision)

    def _build_event(self, run: TestRun, test_name: str, selector: Optional[str],
                     error_message: Optional[str], test_file: Optional[str],
                     snapshot_ref: Optional[str], decision: HealingDecision) -> HealingEvent:
        healed = decision.status is HealingStatus.HEALED_AUTO
        return HealingEvent(
            run_id=run.id,
            test_name=test_name,
            original_selector=selector or "",
            error_message=error_message or "",
            test_file=test_file,
            snapshot_ref=snapshot_ref,
            selector_type=self.selector_analyzer.classify(selector or ""),
            confidence=decision.confidence,
            healed_selector=decision.healed_selector,
            new_selector_type=(self.selector_analyzer.classify(decision.healed_selector)
                               if decision.healed_selector else None),
            status=decision.status,
            reason_code=decision.reason_code,
            strategy=decision.strategy,
            element_path=decision.element_path,
            candidates=decision.candidates,
            action_taken="auto_healed" if healed else None,
            applied_by="healing-engine" if healed else None,
            applied_at=datetime.now() if healed else None,
        )

    async def load_history(self, project_id: str, test_name: str,
                           changed_files: Optional[List[str]] = None) -> ElementHistory:
        """
        Build the element history of a test from its earlier results.

        The miss streak counts the most recent failures whose selector found
        nothing usable, stopping at the first pass or successful heal.
        """
        entries = await self.repository.test_history(
            project_id, test_name, self.settings.HISTORY_LOOKBACK
        )

        misses = 0
        for result, event in entries:
            if result.outcome is TestOutcome.SKIPPED:
                continue
            if event is None or event.reason_code not in MISS_REASONS:
                break
            misses += 1

        last_known_path = next(
            (event.element_path for _, event in entries
             if event is not None and event.status.is_healed and event.element_path),
            None,
        )

        ui_change = False
        if changed_files:
            ui_change = self.impact_analyzer.analyze(changed_files).ui_change_detected

        return ElementHistory(
            last_known_path=last_known_path,
            consecutive_misses=misses,
            ui_change_detected=ui_change,
        )

    async def _duplicate_ack(self, run_id: str, test_name: str, result: TestResult,
                             log) -> ReportAck:
        event = await self.repository.get_event_for_test(run_id, test_name)
        run = await self.repository.get_run(run_id)
        self.metrics.record_duplicate()
        log.debug("Duplicate report answered from the recorded decision")
        return ReportAck(run=run, test_name=test_name, outcome=result.outcome,
                         event=event, duplicate=True)

    def _log_run_finished(self, run: TestRun) -> None:
        get_healing_logger("orchestrator", run_id=run.id).info(
            f"Run {run.status.value}: {run.total_tests} tests, {run.passed_tests} passed, "
            f"{run.failed_tests} failed, {run.healed_tests} healed"
        )
