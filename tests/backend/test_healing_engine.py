"""Tests for the end-to-end healing pipeline."""

from unittest.mock import Mock

from healify.core.models import (
    ElementHistory, HealingConfiguration, HealingStatus, ReasonCode,
)
from healify.services.healing_engine import HealingEngine


PRODUCT_PAGE = """
<html><body>
    <section class="products">
        <div class="product-tile"><h2>Lamp</h2></div>
        <div class="product-tile"><h2>Chair</h2></div>
    </section>
</body></html>
"""


class TestHealingEngine:
    """Test cases for HealingEngine."""

    def setup_method(self):
        self.engine = HealingEngine(HealingConfiguration())

    def test_renamed_id_is_healed_to_test_id(self, login_page):
        """A renamed id is healed through the element's test-id attribute."""
        decision = self.engine.heal(login_page, "#login-btn")

        assert decision.status == HealingStatus.HEALED_AUTO
        assert decision.reason_code == ReasonCode.HIGH_CONFIDENCE_MATCH
        assert decision.healed_selector == '[data-testid="login-btn"]'
        assert decision.confidence == 1.0
        assert decision.element_path == "html[0]/body[1]/main[1]/form[0]/button[2]"

    def test_removed_element_is_reported_as_bug(self):
        decision = self.engine.heal(PRODUCT_PAGE, ".card.featured")

        assert decision.status == HealingStatus.BUG_DETECTED
        assert decision.reason_code == ReasonCode.NO_CANDIDATES
        assert decision.candidates == []

    def test_removed_element_after_repeated_misses_is_ignored(self):
        history = ElementHistory(consecutive_misses=4)
        decision = self.engine.heal(PRODUCT_PAGE, ".card.featured", history)

        assert decision.status == HealingStatus.IGNORED
        assert decision.reason_code == ReasonCode.ELEMENT_REMOVED

    def test_partial_class_match_needs_review(self):
        snapshot = '<form><button class="btn-primary">Go</button><a href="#">x</a></form>'
        decision = self.engine.heal(snapshot, "button.btn-primary.submit")

        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.AMBIGUOUS_MATCH
        assert decision.healed_selector is None
        assert decision.candidates[0].suggested_selector == "button.btn-primary"
        assert 0.5 <= decision.confidence < 0.85

    def test_oversized_snapshot_needs_review(self):
        snapshot = "<div>" + "x" * (3 * 1024 * 1024) + "</div>"
        decision = self.engine.heal(snapshot, "#login-btn")

        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.SNAPSHOT_TOO_LARGE
        assert decision.confidence == 0.0

    def test_size_bound_is_configurable(self, login_page):
        engine = HealingEngine(max_snapshot_bytes=64)
        assert engine.heal(login_page, "#login-btn").reason_code == ReasonCode.SNAPSHOT_TOO_LARGE

    def test_missing_selector(self, login_page):
        for selector in (None, "", "   "):
            decision = self.engine.heal(login_page, selector)
            assert decision.status == HealingStatus.NEEDS_REVIEW
            assert decision.reason_code == ReasonCode.MISSING_SELECTOR

    def test_missing_snapshot(self):
        for snapshot in (None, "", b"  "):
            decision = self.engine.heal(snapshot, "#login-btn")
            assert decision.reason_code == ReasonCode.MISSING_SNAPSHOT

    def test_invalid_snapshot(self):
        decision = self.engine.heal(b"<div>\xff</div>", "#login-btn")
        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.INVALID_SNAPSHOT

    def test_unsupported_selector(self, login_page):
        decision = self.engine.heal(login_page, "form > button:nth-child(3)")

        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.UNSUPPORTED_SELECTOR
        assert "Unsupported selector" in decision.detail

    def test_deterministic(self, login_page):
        """Same inputs give the same decision."""
        first = self.engine.heal(login_page, "button.btn-primary")
        second = HealingEngine().heal(login_page, "button.btn-primary")

        assert first.status == second.status
        assert first.healed_selector == second.healed_selector
        assert [c.to_dict() for c in first.candidates] == [c.to_dict() for c in second.candidates]

    def test_custom_policy_receives_ranked_candidates(self, login_page):
        policy = Mock()
        engine = HealingEngine(policy=policy)

        engine.heal(login_page, "#login-btn")

        candidates, history, tree = policy.decide.call_args[0]
        assert candidates[0].element_id == "btn-login-new"
        assert history is None
        assert len(tree) > 0
