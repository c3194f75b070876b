"""In-process repository used for tests and single-instance deployments."""

import copy
import threading
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..core.exceptions import (
    DuplicateReport, HealingEventNotFound, InvalidTransition,
    ProjectNotFound, RunNotActive, RunNotFound,
)
from ..core.models import (
    HealingEvent, HealingStatus, Project, Screenshot, TestResult, TestRun, TestRunStatus,
)
from .repository import HealingRepository, TestHistory, counter_increments

logger = logging.getLogger(__name__)


class InMemoryHealingRepository(HealingRepository):
    """
    Dictionary-backed repository.

    Each mutation validates first and then swaps in new objects while
    holding the lock, so readers never observe half-applied updates.
    Stored objects are copied on the way in and out.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._projects: Dict[str, Project] = {}
        self._runs: Dict[str, TestRun] = {}
        self._run_order: List[str] = []
        self._results: Dict[Tuple[str, str], TestResult] = {}
        self._result_order: List[Tuple[str, str]] = []
        self._events: Dict[str, HealingEvent] = {}
        self._event_index: Dict[Tuple[str, str], str] = {}
        self._screenshots: List[Screenshot] = []

    # =================== Projects ===================

    async def create_project(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = copy.deepcopy(project)
        return project

    async def get_project(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise ProjectNotFound(project_id)
            return copy.deepcopy(project)

    async def get_project_by_api_key(self, api_key: str) -> Optional[Project]:
        with self._lock:
            for project in self._projects.values():
                if project.api_key == api_key:
                    return copy.deepcopy(project)
        return None

    # =================== Test runs ===================

    async def create_run(self, run: TestRun) -> TestRun:
        with self._lock:
            if run.project_id not in self._projects:
                raise ProjectNotFound(run.project_id)
            self._runs[run.id] = copy.deepcopy(run)
            self._run_order.append(run.id)
        return run

    async def get_run(self, run_id: str) -> TestRun:
        with self._lock:
            return copy.deepcopy(self._fetch_run(run_id))

    async def list_runs(self, project_id: str, limit: int) -> List[TestRun]:
        with self._lock:
            runs = [self._runs[run_id] for run_id in reversed(self._run_order)
                    if self._runs[run_id].project_id == project_id]
            runs.sort(key=lambda r: r.started_at, reverse=True)
            return copy.deepcopy(runs[:limit])

    async def find_active_run(self, project_id: str, branch: Optional[str],
                              commit_sha: Optional[str]) -> Optional[TestRun]:
        with self._lock:
            for run_id in reversed(self._run_order):
                run = self._runs[run_id]
                if (run.project_id == project_id and run.branch == branch
                        and run.commit_sha == commit_sha and not run.status.is_terminal):
                    return copy.deepcopy(run)
        return None

    async def finish_run(self, run_id: str, status: TestRunStatus,
                         failure_reason: Optional[str] = None) -> TestRun:
        with self._lock:
            run = self._fetch_run(run_id)
            if run.status.is_terminal:
                raise RunNotActive(run_id, run.status.value)
            finished = replace(run, status=status, finished_at=datetime.now(),
                               failure_reason=failure_reason)
            self._runs[run_id] = finished
            return copy.deepcopy(finished)

    # =================== Results ===================

    async def record_result(self, result: TestResult,
                            event: Optional[HealingEvent] = None) -> TestRun:
        key = (result.run_id, result.test_name)
        with self._lock:
            run = self._fetch_run(result.run_id)
            if key in self._results:
                raise DuplicateReport(result.run_id, result.test_name)
            if run.status.is_terminal:
                raise RunNotActive(run.id, run.status.value)

            passed, failed, healed = counter_increments(result.outcome, event)
            updated = replace(
                run,
                status=TestRunStatus.RUNNING if run.status is TestRunStatus.PENDING else run.status,
                total_tests=run.total_tests + 1,
                passed_tests=run.passed_tests + passed,
                failed_tests=run.failed_tests + failed,
                healed_tests=run.healed_tests + healed,
            )
            staged_result = copy.deepcopy(result)
            staged_event = copy.deepcopy(event) if event is not None else None

            self._results[key] = staged_result
            self._result_order.append(key)
            if staged_event is not None:
                self._events[staged_event.id] = staged_event
                self._event_index[key] = staged_event.id
            self._runs[run.id] = updated
            return copy.deepcopy(updated)

    async def get_result(self, run_id: str, test_name: str) -> Optional[TestResult]:
        with self._lock:
            result = self._results.get((run_id, test_name))
            return copy.deepcopy(result) if result else None

    async def list_results(self, run_id: str) -> List[TestResult]:
        with self._lock:
            return [copy.deepcopy(self._results[key]) for key in self._result_order if key[0] == run_id]

    async def test_history(self, project_id: str, test_name: str, limit: int) -> TestHistory:
        history = []
        with self._lock:
            for key in reversed(self._result_order):
                if len(history) >= limit:
                    break
                run_id, name = key
                if name != test_name or self._runs[run_id].project_id != project_id:
                    continue
                event_id = self._event_index.get(key)
                event = copy.deepcopy(self._events[event_id]) if event_id else None
                history.append((copy.deepcopy(self._results[key]), event))
        return history

    # =================== Healing events ===================

    async def get_event(self, event_id: str) -> HealingEvent:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise HealingEventNotFound(event_id)
            return copy.deepcopy(event)

    async def get_event_for_test(self, run_id: str, test_name: str) -> Optional[HealingEvent]:
        with self._lock:
            event_id = self._event_index.get((run_id, test_name))
            return copy.deepcopy(self._events[event_id]) if event_id else None

    async def list_events(self, run_id: str) -> List[HealingEvent]:
        with self._lock:
            return [
                copy.deepcopy(self._events[self._event_index[key]])
                for key in self._result_order
                if key[0] == run_id and key in self._event_index
            ]

    async def apply_review(self, event: HealingEvent,
                           expected_status: HealingStatus) -> Tuple[HealingEvent, TestRun]:
        with self._lock:
            current = self._events.get(event.id)
            if current is None:
                raise HealingEventNotFound(event.id)
            if current.status is not expected_status:
                raise InvalidTransition(current.status.value, event.status.value,
                                        "event changed concurrently")
            run = self._fetch_run(event.run_id)
            # Counts a manual heal even on a terminal run, so healed_tests keeps
            # matching the run's HEALED_AUTO and HEALED_MANUAL events.
            if event.status is HealingStatus.HEALED_MANUAL:
                run = replace(run, healed_tests=run.healed_tests + 1)

            self._events[event.id] = copy.deepcopy(event)
            self._runs[run.id] = run
            return copy.deepcopy(event), copy.deepcopy(run)

    # =================== Screenshots ===================

    async def add_screenshot(self, screenshot: Screenshot) -> Screenshot:
        with self._lock:
            self._fetch_run(screenshot.run_id)
            self._screenshots.append(copy.deepcopy(screenshot))
        return screenshot

    async def list_screenshots(self, run_id: str) -> List[Screenshot]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._screenshots if s.run_id == run_id]

    def _fetch_run(self, run_id: str) -> TestRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run
