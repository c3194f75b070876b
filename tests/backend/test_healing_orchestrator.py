"""
Tests for the Test Run Orchestrator.

These tests cover the run lifecycle, result reporting with synchronous
healing, at-most-once healing per (run, test name), counter bookkeeping,
human review and element history.
"""

import asyncio
import threading
import pytest
from unittest.mock import patch

from healify.core.exceptions import (
    InvalidTransition, PersistenceFailure, ProjectNotFound, RunNotActive, RunNotFound,
)
from healify.core.models import (
    HealingStatus, ReasonCode, ReviewAction, SelectorType, TestOutcome, TestRunStatus,
)
from healify.services.healing_orchestrator import KeyedLock, summarize_events


PRODUCT_PAGE = """
<html><body>
    <section class="products">
        <div class="product-tile"><h2>Lamp</h2></div>
    </section>
</body></html>
"""

AMBIGUOUS_PAGE = '<form><button class="btn-primary">Go</button></form>'


class TestRunLifecycle:
    """Begin, complete and fail runs."""

    @pytest.mark.asyncio
    async def test_begin_run_is_pending(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id, branch="main", commit_sha="abc123")

        assert run.status == TestRunStatus.PENDING
        assert run.total_tests == 0
        assert (await orchestrator.get_run(run.id)).branch == "main"

    @pytest.mark.asyncio
    async def test_begin_run_for_unknown_project(self, orchestrator):
        with pytest.raises(ProjectNotFound):
            await orchestrator.begin_run("missing-project")

    @pytest.mark.asyncio
    async def test_first_result_moves_run_to_running(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        ack = await orchestrator.report_result(run.id, "Login Works", TestOutcome.PASSED)
        assert ack.run.status == TestRunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_complete_run(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        completed = await orchestrator.complete_run(run.id)

        assert completed.status == TestRunStatus.COMPLETED
        assert completed.finished_at is not None
        assert completed.duration is not None

    @pytest.mark.asyncio
    async def test_terminal_run_cannot_finish_again(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.fail_run(run.id, "timeout")

        with pytest.raises(RunNotActive):
            await orchestrator.complete_run(run.id)
        assert (await orchestrator.get_run(run.id)).failure_reason == "timeout"

    @pytest.mark.asyncio
    async def test_unknown_run(self, orchestrator):
        with pytest.raises(RunNotFound):
            await orchestrator.report_result("nope", "Login Works", TestOutcome.PASSED)


class TestResultReporting:
    """Counters and healing of reported results."""

    @pytest.mark.asyncio
    async def test_counters_follow_outcomes(self, orchestrator, project, login_page):
        run = await orchestrator.begin_run(project.id)

        await orchestrator.report_result(run.id, "Home Loads", TestOutcome.PASSED)
        await orchestrator.report_result(run.id, "Search Works", "skipped")
        ack = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED,
            selector="#login-btn", snapshot=login_page,
        )

        run = ack.run
        assert run.total_tests == 3
        assert run.passed_tests == 1
        assert run.failed_tests == 1
        assert run.healed_tests == 1
        assert run.passed_tests + run.failed_tests <= run.total_tests

    @pytest.mark.asyncio
    async def test_failed_result_is_healed_synchronously(self, orchestrator, project, login_page):
        run = await orchestrator.begin_run(project.id)
        ack = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED,
            selector="#login-btn", error_message="Element not found", snapshot=login_page,
            test_file="tests/login.spec.ts",
        )

        assert ack.status == HealingStatus.HEALED_AUTO
        assert ack.healed_selector == '[data-testid="login-btn"]'
        assert ack.duplicate is False

        event = ack.event
        assert event.selector_type == SelectorType.ID
        assert event.new_selector_type == SelectorType.TESTID
        assert event.action_taken == "auto_healed"
        assert event.applied_by == "healing-engine"
        assert event.test_file == "tests/login.spec.ts"
        assert ack.to_dict()["reason_code"] == "HIGH_CONFIDENCE_MATCH"

    @pytest.mark.asyncio
    async def test_passed_result_has_no_event(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        ack = await orchestrator.report_result(run.id, "Home Loads", TestOutcome.PASSED)

        assert ack.event is None
        assert ack.to_dict()["status"] is None
        assert await orchestrator.repository.list_events(run.id) == []

    @pytest.mark.asyncio
    async def test_unhealed_failure_does_not_count_as_healed(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        ack = await orchestrator.report_result(
            run.id, "Featured Card", TestOutcome.FAILED,
            selector=".card.featured", snapshot=PRODUCT_PAGE,
        )

        assert ack.status == HealingStatus.BUG_DETECTED
        assert ack.healed_selector is None
        assert ack.run.failed_tests == 1
        assert ack.run.healed_tests == 0

    @pytest.mark.asyncio
    async def test_snapshot_is_stored_with_event(self, orchestrator, project, login_page):
        run = await orchestrator.begin_run(project.id)
        ack = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=login_page,
        )

        assert ack.event.snapshot_ref.startswith("local://")
        assert await orchestrator.load_snapshot(ack.event.id) == login_page.encode("utf-8")

    @pytest.mark.asyncio
    async def test_deeply_nested_snapshot_is_healed(self, orchestrator, project):
        depth = 2000
        snapshot = ("<div>" * depth + '<button data-testid="login-btn">Login</button>'
                    + "</div>" * depth)
        run = await orchestrator.begin_run(project.id)

        ack = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=snapshot,
        )

        assert ack.status == HealingStatus.HEALED_AUTO
        assert ack.healed_selector == '[data-testid="login-btn"]'
        assert len(await orchestrator.repository.list_events(run.id)) == 1

    @pytest.mark.asyncio
    async def test_empty_test_name_is_rejected(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        with pytest.raises(ValueError):
            await orchestrator.report_result(run.id, "  ", TestOutcome.PASSED)

    @pytest.mark.asyncio
    async def test_report_on_terminal_run_is_rejected(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.complete_run(run.id)

        with pytest.raises(RunNotActive):
            await orchestrator.report_result(run.id, "Late Test", TestOutcome.PASSED)

    @pytest.mark.asyncio
    async def test_decision_metrics(self, orchestrator, project, login_page, metrics):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=login_page,
        )

        assert metrics.get_counter("healing_decisions_total", {"status": "HEALED_AUTO"}) == 1
        assert metrics.get_counter("test_results_total", {"outcome": "failed"}) == 1


class TestIdempotentReporting:
    """At most one healing attempt per (run, test name)."""

    @pytest.mark.asyncio
    async def test_repeated_report_returns_stored_decision(self, orchestrator, project, login_page,
                                                           metrics):
        run = await orchestrator.begin_run(project.id)
        first = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=login_page,
        )
        second = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#other", snapshot="<p>x</p>",
        )

        assert second.duplicate is True
        assert second.event.id == first.event.id
        assert second.healed_selector == first.healed_selector
        assert second.run.total_tests == 1
        assert metrics.get_counter("duplicate_reports_total") == 1

    @pytest.mark.asyncio
    async def test_duplicate_keeps_original_outcome(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.report_result(run.id, "Home Loads", TestOutcome.PASSED)
        again = await orchestrator.report_result(run.id, "Home Loads", TestOutcome.FAILED)

        assert again.duplicate is True
        assert again.outcome == TestOutcome.PASSED
        assert again.event is None
        assert again.run.failed_tests == 0

    @pytest.mark.asyncio
    async def test_duplicate_after_completion_returns_stored_decision(self, orchestrator, project,
                                                                      login_page):
        run = await orchestrator.begin_run(project.id)
        first = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=login_page,
        )
        await orchestrator.complete_run(run.id)

        again = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=login_page,
        )
        assert again.duplicate is True
        assert again.event.id == first.event.id

    @pytest.mark.asyncio
    async def test_concurrent_reports_heal_once(self, orchestrator, project, repository, login_page):
        """Simultaneous reports of one failure produce exactly one event."""
        run = await orchestrator.begin_run(project.id)
        original_history = repository.test_history

        async def slow_history(*args):
            await asyncio.sleep(0.01)
            return await original_history(*args)

        with patch.object(repository, "test_history", side_effect=slow_history):
            acks = await asyncio.gather(*[
                orchestrator.report_result(
                    run.id, "Login Works", TestOutcome.FAILED,
                    selector="#login-btn", snapshot=login_page,
                )
                for _ in range(5)
            ])

        events = await repository.list_events(run.id)
        assert len(events) == 1
        assert {ack.event.id for ack in acks} == {events[0].id}
        assert sum(1 for ack in acks if not ack.duplicate) == 1
        assert (await orchestrator.get_run(run.id)).total_tests == 1

    @pytest.mark.asyncio
    async def test_different_tests_are_independent(self, orchestrator, project, login_page):
        run = await orchestrator.begin_run(project.id)
        await asyncio.gather(*[
            orchestrator.report_result(run.id, f"Test {i}", TestOutcome.FAILED,
                                       selector="#login-btn", snapshot=login_page)
            for i in range(4)
        ])

        run = await orchestrator.get_run(run.id)
        assert run.total_tests == 4
        assert run.healed_tests == 4

    @pytest.mark.asyncio
    async def test_healing_does_not_block_other_keys(self, orchestrator, project, login_page):
        """A report on another test finishes while a heal is still running."""
        run = await orchestrator.begin_run(project.id)
        release = threading.Event()
        real_heal = orchestrator.engine.heal

        def blocking_heal(*args):
            release.wait(timeout=5)
            return real_heal(*args)

        with patch.object(orchestrator.engine, "heal", side_effect=blocking_heal):
            slow = asyncio.create_task(orchestrator.report_result(
                run.id, "Login Works", TestOutcome.FAILED,
                selector="#login-btn", snapshot=login_page,
            ))
            await asyncio.sleep(0.05)

            fast = await asyncio.wait_for(
                orchestrator.report_result(run.id, "Home Loads", TestOutcome.PASSED), timeout=2
            )
            assert fast.run.total_tests == 1
            assert not slow.done()

            release.set()
            healed = await slow

        assert healed.status == HealingStatus.HEALED_AUTO
        assert healed.run.total_tests == 2

    @pytest.mark.asyncio
    async def test_locks_are_released(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.report_result(run.id, "Home Loads", TestOutcome.PASSED)
        assert len(orchestrator.locks) == 0


class TestPersistenceFailures:
    """Failed writes leave nothing behind."""

    @pytest.mark.asyncio
    async def test_failed_write_is_not_visible(self, orchestrator, project, repository, login_page,
                                               metrics):
        run = await orchestrator.begin_run(project.id)

        with patch.object(repository, "record_result", side_effect=PersistenceFailure("disk full")):
            with pytest.raises(PersistenceFailure) as exc_info:
                await orchestrator.report_result(
                    run.id, "Login Works", TestOutcome.FAILED,
                    selector="#login-btn", snapshot=login_page,
                )

        assert exc_info.value.retryable is True
        assert await repository.get_result(run.id, "Login Works") is None
        assert await repository.list_events(run.id) == []
        assert (await orchestrator.get_run(run.id)).total_tests == 0
        assert metrics.get_counter("persistence_failures_total", {"operation": "record_result"}) == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure_succeeds(self, orchestrator, project, repository, login_page):
        run = await orchestrator.begin_run(project.id)

        with patch.object(repository, "record_result", side_effect=PersistenceFailure("locked")):
            with pytest.raises(PersistenceFailure):
                await orchestrator.report_result(
                    run.id, "Login Works", TestOutcome.FAILED,
                    selector="#login-btn", snapshot=login_page,
                )

        ack = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=login_page,
        )
        assert ack.duplicate is False
        assert ack.run.healed_tests == 1


class TestHumanReview:
    """Resolving NEEDS_REVIEW events."""

    async def _needs_review(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        ack = await orchestrator.report_result(
            run.id, "Submit Order", TestOutcome.FAILED,
            selector="button.btn-primary.submit", snapshot=AMBIGUOUS_PAGE,
        )
        assert ack.status == HealingStatus.NEEDS_REVIEW
        return run, ack.event

    @pytest.mark.asyncio
    async def test_accept_counts_as_healed(self, orchestrator, project, metrics):
        run, event = await self._needs_review(orchestrator, project)

        reviewed, run = await orchestrator.resolve_review(event.id, "accept", applied_by="qa")

        assert reviewed.status == HealingStatus.HEALED_MANUAL
        assert reviewed.healed_selector == "button.btn-primary"
        assert reviewed.applied_by == "qa"
        assert run.healed_tests == 1
        assert metrics.get_counter("reviews_total", {"action": "accept"}) == 1

    @pytest.mark.asyncio
    async def test_accept_after_run_completed(self, orchestrator, project):
        run, event = await self._needs_review(orchestrator, project)
        await orchestrator.complete_run(run.id)

        _, run = await orchestrator.resolve_review(event.id, ReviewAction.ACCEPT)

        assert run.status == TestRunStatus.COMPLETED
        assert run.healed_tests == 1

    @pytest.mark.asyncio
    async def test_mark_bug_does_not_count_as_healed(self, orchestrator, project):
        _, event = await self._needs_review(orchestrator, project)
        reviewed, run = await orchestrator.resolve_review(event.id, ReviewAction.MARK_BUG)

        assert reviewed.status == HealingStatus.BUG_DETECTED
        assert run.healed_tests == 0

    @pytest.mark.asyncio
    async def test_second_review_is_rejected(self, orchestrator, project):
        _, event = await self._needs_review(orchestrator, project)
        await orchestrator.resolve_review(event.id, ReviewAction.IGNORE)

        with pytest.raises(InvalidTransition):
            await orchestrator.resolve_review(event.id, ReviewAction.ACCEPT)
        assert (await orchestrator.get_event(event.id)).status == HealingStatus.IGNORED

    @pytest.mark.asyncio
    async def test_auto_healed_event_cannot_be_reviewed(self, orchestrator, project, login_page):
        run = await orchestrator.begin_run(project.id)
        ack = await orchestrator.report_result(
            run.id, "Login Works", TestOutcome.FAILED, selector="#login-btn", snapshot=login_page,
        )
        with pytest.raises(InvalidTransition):
            await orchestrator.resolve_review(ack.event.id, ReviewAction.REJECT)

    @pytest.mark.asyncio
    async def test_list_events_summary(self, orchestrator, project, login_page):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.report_result(run.id, "Login Works", TestOutcome.FAILED,
                                         selector="#login-btn", snapshot=login_page)
        await orchestrator.report_result(run.id, "Featured Card", TestOutcome.FAILED,
                                         selector=".card.featured", snapshot=PRODUCT_PAGE)
        await orchestrator.report_result(run.id, "Home Loads", TestOutcome.PASSED)

        events, summary = await orchestrator.list_events(run.id)

        assert [e.test_name for e in events] == ["Login Works", "Featured Card"]
        assert summary == {
            "autoHealed": 1, "manualHealed": 0, "needsReview": 0,
            "bugDetected": 1, "ignored": 0, "total": 2,
        }


class TestIngest:
    """Single-failure ingestion from CI."""

    @pytest.mark.asyncio
    async def test_ingest_reuses_active_run(self, orchestrator, project, login_page):
        first = await orchestrator.ingest(project.id, "Login Works", "#login-btn",
                                          dom_snapshot=login_page, branch="main", commit_sha="abc")
        second = await orchestrator.ingest(project.id, "Cart Link", "a.cart",
                                           dom_snapshot=login_page, branch="main", commit_sha="abc")

        assert first.run.id == second.run.id
        assert first.run.triggered_by == "cli"
        assert second.run.total_tests == 2

    @pytest.mark.asyncio
    async def test_ingest_starts_new_run_for_other_commit(self, orchestrator, project, login_page):
        first = await orchestrator.ingest(project.id, "Login Works", "#login-btn",
                                          dom_snapshot=login_page, branch="main", commit_sha="abc")
        await orchestrator.complete_run(first.run.id)
        second = await orchestrator.ingest(project.id, "Login Works", "#login-btn",
                                           dom_snapshot=login_page, branch="main", commit_sha="abc")
        third = await orchestrator.ingest(project.id, "Login Works", "#login-btn",
                                          dom_snapshot=login_page, branch="main", commit_sha="def")

        assert len({first.run.id, second.run.id, third.run.id}) == 3

    @pytest.mark.asyncio
    async def test_ingest_missing_snapshot_needs_review(self, orchestrator, project):
        ack = await orchestrator.ingest(project.id, "Login Works", "#login-btn")
        assert ack.status == HealingStatus.NEEDS_REVIEW
        assert ack.event.reason_code == ReasonCode.MISSING_SNAPSHOT
        assert ack.event.snapshot_ref is None


class TestElementHistory:
    """History fed back into later healing attempts."""

    async def _fail_in_new_run(self, orchestrator, project, changed_files=None):
        run = await orchestrator.begin_run(project.id)
        return await orchestrator.report_result(
            run.id, "Featured Card", TestOutcome.FAILED,
            selector=".card.featured", snapshot=PRODUCT_PAGE, changed_files=changed_files,
        )

    @pytest.mark.asyncio
    async def test_repeated_misses_become_ignored(self, orchestrator, project):
        statuses = []
        for _ in range(4):
            ack = await self._fail_in_new_run(orchestrator, project)
            statuses.append(ack.status)

        assert statuses[:3] == [HealingStatus.BUG_DETECTED] * 3
        assert statuses[3] == HealingStatus.IGNORED

    @pytest.mark.asyncio
    async def test_ui_change_keeps_reporting_bugs(self, orchestrator, project):
        for _ in range(3):
            await self._fail_in_new_run(orchestrator, project)

        ack = await self._fail_in_new_run(orchestrator, project,
                                          changed_files=["src/components/FeaturedCard.tsx"])
        assert ack.status == HealingStatus.BUG_DETECTED

    @pytest.mark.asyncio
    async def test_pass_resets_miss_streak(self, orchestrator, project):
        for _ in range(2):
            await self._fail_in_new_run(orchestrator, project)
        run = await orchestrator.begin_run(project.id)
        await orchestrator.report_result(run.id, "Featured Card", TestOutcome.PASSED)
        run = await orchestrator.begin_run(project.id)
        await orchestrator.report_result(run.id, "Featured Card", TestOutcome.SKIPPED)

        history = await orchestrator.load_history(project.id, "Featured Card")
        assert history.consecutive_misses == 0

    @pytest.mark.asyncio
    async def test_last_known_path_comes_from_healed_event(self, orchestrator, project, login_page):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.report_result(run.id, "Login Works", TestOutcome.FAILED,
                                         selector="#login-btn", snapshot=login_page)

        history = await orchestrator.load_history(project.id, "Login Works")

        assert history.last_known_path == "html[0]/body[1]/main[1]/form[0]/button[2]"
        assert history.consecutive_misses == 0
        assert history.ui_change_detected is False


class TestScreenshots:

    @pytest.mark.asyncio
    async def test_attach_and_list(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        shot = await orchestrator.attach_screenshot(run.id, "s3://bucket/login.png", "Login Works")

        listed = await orchestrator.list_screenshots(run.id)
        assert [s.id for s in listed] == [shot.id]

    @pytest.mark.asyncio
    async def test_attach_to_terminal_run(self, orchestrator, project):
        run = await orchestrator.begin_run(project.id)
        await orchestrator.complete_run(run.id)
        with pytest.raises(RunNotActive):
            await orchestrator.attach_screenshot(run.id, "x.png")


class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("k", 1):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entry_removed_after_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")
        assert len(locks) == 0


class TestSummarizeEvents:

    def test_empty(self):
        assert summarize_events([])["total"] == 0
