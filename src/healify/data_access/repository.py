"""Repository pattern for healing run storage."""

import abc
import json
import sqlite3
import asyncio
import logging
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from ..core.exceptions import (
    DuplicateReport, HealingEventNotFound, InvalidTransition, PersistenceFailure,
    ProjectNotFound, RunNotActive, RunNotFound,
)
from ..core.models import (
    CandidateMatch, HealingEvent, HealingStatus, Project, ReasonCode, Screenshot,
    SelectorType, TestOutcome, TestResult, TestRun, TestRunStatus,
)
from .queries import (
    SCHEMA,
    INSERT_PROJECT, SELECT_PROJECT_BY_ID, SELECT_PROJECT_BY_API_KEY,
    INSERT_TEST_RUN, SELECT_TEST_RUN, SELECT_RUNS_FOR_PROJECT, SELECT_ACTIVE_RUN_FOR_COMMIT,
    UPDATE_RUN_COUNTERS, UPDATE_RUN_HEALED, UPDATE_RUN_FINISHED,
    INSERT_TEST_RESULT, SELECT_TEST_RESULT, SELECT_RESULTS_FOR_RUN, SELECT_TEST_HISTORY,
    INSERT_HEALING_EVENT, SELECT_HEALING_EVENT, SELECT_EVENT_FOR_TEST, SELECT_EVENTS_FOR_RUN,
    UPDATE_EVENT_REVIEW,
    INSERT_SCREENSHOT, SELECT_SCREENSHOTS_FOR_RUN,
)

logger = logging.getLogger(__name__)

# (result, healing event recorded for it, if any), newest first
TestHistory = List[Tuple[TestResult, Optional[HealingEvent]]]


def counter_increments(outcome: TestOutcome, event: Optional[HealingEvent]) -> Tuple[int, int, int]:
    """(passed, failed, healed) increments for one newly recorded result."""
    passed = 1 if outcome is TestOutcome.PASSED else 0
    failed = 1 if outcome is TestOutcome.FAILED else 0
    healed = 1 if event is not None and event.status is HealingStatus.HEALED_AUTO else 0
    return passed, failed, healed


class HealingRepository(abc.ABC):
    """
    Storage port for projects, runs, results and healing events.

    Every mutating method is atomic: it either applies all of its changes
    or raises with none of them visible.
    """

    # =================== Projects ===================

    @abc.abstractmethod
    async def create_project(self, project: Project) -> Project:
        ...

    @abc.abstractmethod
    async def get_project(self, project_id: str) -> Project:
        """Raises ProjectNotFound."""

    @abc.abstractmethod
    async def get_project_by_api_key(self, api_key: str) -> Optional[Project]:
        ...

    # =================== Test runs ===================

    @abc.abstractmethod
    async def create_run(self, run: TestRun) -> TestRun:
        """Raises ProjectNotFound if the run's project does not exist."""

    @abc.abstractmethod
    async def get_run(self, run_id: str) -> TestRun:
        """Raises RunNotFound."""

    @abc.abstractmethod
    async def list_runs(self, project_id: str, limit: int) -> List[TestRun]:
        """Most recent runs of a project, newest first."""

    @abc.abstractmethod
    async def find_active_run(self, project_id: str, branch: Optional[str],
                              commit_sha: Optional[str]) -> Optional[TestRun]:
        ...

    @abc.abstractmethod
    async def finish_run(self, run_id: str, status: TestRunStatus,
                         failure_reason: Optional[str] = None) -> TestRun:
        """Move an active run to a terminal status. Raises RunNotActive."""

    # =================== Results ===================

    @abc.abstractmethod
    async def record_result(self, result: TestResult,
                            event: Optional[HealingEvent] = None) -> TestRun:
        """
        Store a result, its healing event and the counter updates as one unit.

        Raises:
            RunNotFound: If the run does not exist
            RunNotActive: If the run is terminal
            DuplicateReport: If the (run, test name) pair is already recorded
        """

    @abc.abstractmethod
    async def get_result(self, run_id: str, test_name: str) -> Optional[TestResult]:
        ...

    @abc.abstractmethod
    async def list_results(self, run_id: str) -> List[TestResult]:
        ...

    @abc.abstractmethod
    async def test_history(self, project_id: str, test_name: str, limit: int) -> TestHistory:
        ...

    # =================== Healing events ===================

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> HealingEvent:
        """Raises HealingEventNotFound."""

    @abc.abstractmethod
    async def get_event_for_test(self, run_id: str, test_name: str) -> Optional[HealingEvent]:
        ...

    @abc.abstractmethod
    async def list_events(self, run_id: str) -> List[HealingEvent]:
        ...

    @abc.abstractmethod
    async def apply_review(self, event: HealingEvent,
                           expected_status: HealingStatus) -> Tuple[HealingEvent, TestRun]:
        """
        Store a reviewed event if it is still in ``expected_status``.

        Increments the run's healed counter when the new status is
        HEALED_MANUAL. Raises InvalidTransition if the event moved meanwhile.
        """

    # =================== Screenshots ===================

    @abc.abstractmethod
    async def add_screenshot(self, screenshot: Screenshot) -> Screenshot:
        ...

    @abc.abstractmethod
    async def list_screenshots(self, run_id: str) -> List[Screenshot]:
        ...


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteHealingRepository(HealingRepository):
    """SQLite implementation. Each call opens its own connection in a worker thread."""

    def __init__(self, db_path: str):
        """
        Initialize repository with database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def initialize_schema(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

        logger.info(f"Database schema initialized at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            logger.error(f"SQLite operation failed: {e}")
            raise PersistenceFailure(f"Database operation failed: {e}") from e

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(self._connect()) as conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"SQLite read failed: {e}")
            raise PersistenceFailure(f"Database read failed: {e}") from e

    # =================== Projects ===================

    async def create_project(self, project: Project) -> Project:
        return await asyncio.to_thread(self._create_project, project)

    def _create_project(self, project: Project) -> Project:
        with self._transaction() as conn:
            conn.execute(INSERT_PROJECT, (
                project.id, project.name, project.api_key, project.owner_id, _ts(project.created_at),
            ))
        return project

    async def get_project(self, project_id: str) -> Project:
        return await asyncio.to_thread(self._get_project, project_id)

    def _get_project(self, project_id: str) -> Project:
        with self._read() as conn:
            row = conn.execute(SELECT_PROJECT_BY_ID, (project_id,)).fetchone()
        if row is None:
            raise ProjectNotFound(project_id)
        return self._row_to_project(row)

    async def get_project_by_api_key(self, api_key: str) -> Optional[Project]:
        return await asyncio.to_thread(self._get_project_by_api_key, api_key)

    def _get_project_by_api_key(self, api_key: str) -> Optional[Project]:
        with self._read() as conn:
            row = conn.execute(SELECT_PROJECT_BY_API_KEY, (api_key,)).fetchone()
        return self._row_to_project(row) if row else None

    # =================== Test runs ===================

    async def create_run(self, run: TestRun) -> TestRun:
        return await asyncio.to_thread(self._create_run, run)

    def _create_run(self, run: TestRun) -> TestRun:
        with self._transaction() as conn:
            if conn.execute(SELECT_PROJECT_BY_ID, (run.project_id,)).fetchone() is None:
                raise ProjectNotFound(run.project_id)
            conn.execute(INSERT_TEST_RUN, self._run_params(run))
        return run

    async def get_run(self, run_id: str) -> TestRun:
        return await asyncio.to_thread(self._get_run, run_id)

    def _get_run(self, run_id: str) -> TestRun:
        with self._read() as conn:
            return self._fetch_run(conn, run_id)

    async def list_runs(self, project_id: str, limit: int) -> List[TestRun]:
        return await asyncio.to_thread(self._list_runs, project_id, limit)

    def _list_runs(self, project_id: str, limit: int) -> List[TestRun]:
        with self._read() as conn:
            rows = conn.execute(SELECT_RUNS_FOR_PROJECT, (project_id, limit)).fetchall()
        return [self._row_to_run(row) for row in rows]

    async def find_active_run(self, project_id: str, branch: Optional[str],
                              commit_sha: Optional[str]) -> Optional[TestRun]:
        return await asyncio.to_thread(self._find_active_run, project_id, branch, commit_sha)

    def _find_active_run(self, project_id: str, branch: Optional[str],
                         commit_sha: Optional[str]) -> Optional[TestRun]:
        with self._read() as conn:
            row = conn.execute(SELECT_ACTIVE_RUN_FOR_COMMIT, (project_id, branch, commit_sha)).fetchone()
        return self._row_to_run(row) if row else None

    async def finish_run(self, run_id: str, status: TestRunStatus,
                         failure_reason: Optional[str] = None) -> TestRun:
        return await asyncio.to_thread(self._finish_run, run_id, status, failure_reason)

    def _finish_run(self, run_id: str, status: TestRunStatus,
                    failure_reason: Optional[str]) -> TestRun:
        with self._transaction() as conn:
            run = self._fetch_run(conn, run_id)
            if run.status.is_terminal:
                raise RunNotActive(run_id, run.status.value)
            conn.execute(UPDATE_RUN_FINISHED, (status.value, _ts(datetime.now()), failure_reason, run_id))
            return self._fetch_run(conn, run_id)

    # =================== Results ===================

    async def record_result(self, result: TestResult,
                            event: Optional[HealingEvent] = None) -> TestRun:
        return await asyncio.to_thread(self._record_result, result, event)

    def _record_result(self, result: TestResult, event: Optional[HealingEvent]) -> TestRun:
        with self._transaction() as conn:
            run = self._fetch_run(conn, result.run_id)
            if conn.execute(SELECT_TEST_RESULT, (result.run_id, result.test_name)).fetchone():
                raise DuplicateReport(result.run_id, result.test_name)
            if run.status.is_terminal:
                raise RunNotActive(run.id, run.status.value)

            self._insert_result(conn, result)
            if event is not None:
                self._insert_event(conn, event)

            passed, failed, healed = counter_increments(result.outcome, event)
            conn.execute(UPDATE_RUN_COUNTERS, (passed, failed, healed, result.run_id))
            return self._fetch_run(conn, result.run_id)

    def _insert_result(self, conn: sqlite3.Connection, result: TestResult) -> None:
        try:
            conn.execute(INSERT_TEST_RESULT, (
                result.run_id, result.test_name, result.outcome.value, _ts(result.reported_at),
            ))
        except sqlite3.IntegrityError as e:
            raise DuplicateReport(result.run_id, result.test_name) from e

    def _insert_event(self, conn: sqlite3.Connection, event: HealingEvent) -> None:
        conn.execute(INSERT_HEALING_EVENT, (
            event.id, event.run_id, event.test_name, event.test_file,
            event.original_selector, event.error_message, event.snapshot_ref,
            event.selector_type.value, event.confidence, event.healed_selector,
            event.new_selector_type.value if event.new_selector_type else None,
            event.status.value,
            event.reason_code.value if event.reason_code else None,
            event.strategy, event.element_path,
            json.dumps([c.to_dict() for c in event.candidates]),
            event.action_taken, event.applied_by, _ts(event.applied_at), _ts(event.created_at),
        ))

    async def get_result(self, run_id: str, test_name: str) -> Optional[TestResult]:
        return await asyncio.to_thread(self._get_result, run_id, test_name)

    def _get_result(self, run_id: str, test_name: str) -> Optional[TestResult]:
        with self._read() as conn:
            row = conn.execute(SELECT_TEST_RESULT, (run_id, test_name)).fetchone()
        return self._row_to_result(row) if row else None

    async def list_results(self, run_id: str) -> List[TestResult]:
        return await asyncio.to_thread(self._list_results, run_id)

    def _list_results(self, run_id: str) -> List[TestResult]:
        with self._read() as conn:
            rows = conn.execute(SELECT_RESULTS_FOR_RUN, (run_id,)).fetchall()
        return [self._row_to_result(row) for row in rows]

    async def test_history(self, project_id: str, test_name: str, limit: int) -> TestHistory:
        return await asyncio.to_thread(self._test_history, project_id, test_name, limit)

    def _test_history(self, project_id: str, test_name: str, limit: int) -> TestHistory:
        history = []
        with self._read() as conn:
            rows = conn.execute(SELECT_TEST_HISTORY, (project_id, test_name, limit)).fetchall()
            for row in rows:
                event = None
                if row["event_id"]:
                    event_row = conn.execute(SELECT_HEALING_EVENT, (row["event_id"],)).fetchone()
                    event = self._row_to_event(event_row)
                history.append((self._row_to_result(row), event))
        return history

    # =================== Healing events ===================

    async def get_event(self, event_id: str) -> HealingEvent:
        return await asyncio.to_thread(self._get_event, event_id)

    def _get_event(self, event_id: str) -> HealingEvent:
        with self._read() as conn:
            row = conn.execute(SELECT_HEALING_EVENT, (event_id,)).fetchone()
        if row is None:
            raise HealingEventNotFound(event_id)
        return self._row_to_event(row)

    async def get_event_for_test(self, run_id: str, test_name: str) -> Optional[HealingEvent]:
        return await asyncio.to_thread(self._get_event_for_test, run_id, test_name)

    def _get_event_for_test(self, run_id: str, test_name: str) -> Optional[HealingEvent]:
        with self._read() as conn:
            row = conn.execute(SELECT_EVENT_FOR_TEST, (run_id, test_name)).fetchone()
        return self._row_to_event(row) if row else None

    async def list_events(self, run_id: str) -> List[HealingEvent]:
        return await asyncio.to_thread(self._list_events, run_id)

    def _list_events(self, run_id: str) -> List[HealingEvent]:
        with self._read() as conn:
            rows = conn.execute(SELECT_EVENTS_FOR_RUN, (run_id,)).fetchall()
        return [self._row_to_event(row) for row in rows]

    async def apply_review(self, event: HealingEvent,
                           expected_status: HealingStatus) -> Tuple[HealingEvent, TestRun]:
        return await asyncio.to_thread(self._apply_review, event, expected_status)

    def _apply_review(self, event: HealingEvent,
                      expected_status: HealingStatus) -> Tuple[HealingEvent, TestRun]:
        with self._transaction() as conn:
            cursor = conn.execute(UPDATE_EVENT_REVIEW, (
                event.status.value, event.healed_selector,
                event.new_selector_type.value if event.new_selector_type else None,
                event.reason_code.value if event.reason_code else None,
                event.confidence, event.element_path,
                event.action_taken, event.applied_by, _ts(event.applied_at),
                event.id, expected_status.value,
            ))
            if cursor.rowcount == 0:
                row = conn.execute(SELECT_HEALING_EVENT, (event.id,)).fetchone()
                if row is None:
                    raise HealingEventNotFound(event.id)
                raise InvalidTransition(row["status"], event.status.value, "event changed concurrently")
            # Counts a manual heal even on a terminal run, so healed_tests keeps
            # matching the run's HEALED_AUTO and HEALED_MANUAL events.
            if event.status is HealingStatus.HEALED_MANUAL:
                conn.execute(UPDATE_RUN_HEALED, (event.run_id,))
            stored = self._row_to_event(conn.execute(SELECT_HEALING_EVENT, (event.id,)).fetchone())
            return stored, self._fetch_run(conn, event.run_id)

    # =================== Screenshots ===================

    async def add_screenshot(self, screenshot: Screenshot) -> Screenshot:
        return await asyncio.to_thread(self._add_screenshot, screenshot)

    def _add_screenshot(self, screenshot: Screenshot) -> Screenshot:
        with self._transaction() as conn:
            self._fetch_run(conn, screenshot.run_id)
            conn.execute(INSERT_SCREENSHOT, (
                screenshot.id, screenshot.run_id, screenshot.test_name,
                screenshot.kind, screenshot.path, _ts(screenshot.created_at),
            ))
        return screenshot

    async def list_screenshots(self, run_id: str) -> List[Screenshot]:
        return await asyncio.to_thread(self._list_screenshots, run_id)

    def _list_screenshots(self, run_id: str) -> List[Screenshot]:
        with self._read() as conn:
            rows = conn.execute(SELECT_SCREENSHOTS_FOR_RUN, (run_id,)).fetchall()
        return [
            Screenshot(
                id=row["id"], run_id=row["run_id"], test_name=row["test_name"],
                kind=row["kind"], path=row["path"], created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]

    # =================== Row mapping ===================

    def _fetch_run(self, conn: sqlite3.Connection, run_id: str) -> TestRun:
        row = conn.execute(SELECT_TEST_RUN, (run_id,)).fetchone()
        if row is None:
            raise RunNotFound(run_id)
        return self._row_to_run(row)

    def _run_params(self, run: TestRun) -> tuple:
        return (
            run.id, run.project_id, run.branch, run.commit_sha, run.triggered_by, run.status.value,
            run.total_tests, run.passed_tests, run.failed_tests, run.healed_tests,
            run.job_id, _ts(run.started_at), _ts(run.finished_at), run.failure_reason,
        )

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"], name=row["name"], api_key=row["api_key"],
            owner_id=row["owner_id"], created_at=_dt(row["created_at"]),
        )

    def _row_to_run(self, row: sqlite3.Row) -> TestRun:
        return TestRun(
            id=row["id"],
            project_id=row["project_id"],
            branch=row["branch"],
            commit_sha=row["commit_sha"],
            triggered_by=row["triggered_by"],
            status=TestRunStatus(row["status"]),
            total_tests=row["total_tests"],
            passed_tests=row["passed_tests"],
            failed_tests=row["failed_tests"],
            healed_tests=row["healed_tests"],
            job_id=row["job_id"],
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            failure_reason=row["failure_reason"],
        )

    def _row_to_result(self, row: sqlite3.Row) -> TestResult:
        return TestResult(
            run_id=row["run_id"],
            test_name=row["test_name"],
            outcome=TestOutcome(row["outcome"]),
            reported_at=_dt(row["reported_at"]),
        )

    def _row_to_event(self, row: sqlite3.Row) -> HealingEvent:
        return HealingEvent(
            id=row["id"],
            run_id=row["run_id"],
            test_name=row["test_name"],
            test_file=row["test_file"],
            original_selector=row["original_selector"],
            error_message=row["error_message"],
            snapshot_ref=row["snapshot_ref"],
            selector_type=SelectorType(row["selector_type"]),
            confidence=row["confidence"],
            healed_selector=row["healed_selector"],
            new_selector_type=SelectorType(row["new_selector_type"]) if row["new_selector_type"] else None,
            status=HealingStatus(row["status"]),
            reason_code=ReasonCode(row["reason_code"]) if row["reason_code"] else None,
            strategy=row["strategy"],
            element_path=row["element_path"],
            candidates=[CandidateMatch.from_dict(c) for c in json.loads(row["candidates"] or "[]")],
            action_taken=row["action_taken"],
            applied_by=row["applied_by"],
            applied_at=_dt(row["applied_at"]),
            created_at=_dt(row["created_at"]),
        )
