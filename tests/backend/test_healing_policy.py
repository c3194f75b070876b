"""Unit tests for the healing decision policy and review state machine."""

import pytest

from healify.core.exceptions import InvalidTransition, UnsupportedSelectorSyntax
from healify.core.models import (
    CandidateMatch, ElementHistory, HealingEvent, HealingStatus, ReasonCode,
    ReviewAction, SelectorType,
)
from healify.services.dom_analyzer import DOMAnalyzer
from healify.services.healing_policy import (
    HealingPolicy, SYNTHESIS_STRATEGIES, SelectorSynthesizer, transition,
)


def make_candidate(score, tag="button", element_id="", classes=None, attributes=None,
                   text="", index=0):
    return CandidateMatch(
        path=f"html[0]/body[1]/{tag}[{index}]",
        tag=tag,
        score=score,
        depth=2,
        document_index=index,
        element_id=element_id,
        classes=classes or [],
        attributes=attributes or {},
        text=text,
    )


class TestDecide:
    """Threshold rules of the policy."""

    def setup_method(self):
        self.policy = HealingPolicy()

    def test_high_confidence_heals_automatically(self):
        candidate = make_candidate(0.9, attributes={"data-testid": "login-btn"})
        decision = self.policy.decide([candidate])

        assert decision.status == HealingStatus.HEALED_AUTO
        assert decision.reason_code == ReasonCode.HIGH_CONFIDENCE_MATCH
        assert decision.healed_selector == '[data-testid="login-btn"]'
        assert decision.strategy == "test-id"
        assert decision.confidence == 0.9

    def test_threshold_boundaries(self):
        """0.85 heals, 0.5 goes to review, just below 0.5 is a bug."""
        with_id = {"element_id": "go"}
        assert self.policy.decide([make_candidate(0.85, **with_id)]).status == HealingStatus.HEALED_AUTO
        assert self.policy.decide([make_candidate(0.8499, **with_id)]).status == HealingStatus.NEEDS_REVIEW
        assert self.policy.decide([make_candidate(0.5, **with_id)]).status == HealingStatus.NEEDS_REVIEW
        assert self.policy.decide([make_candidate(0.4999, **with_id)]).status == HealingStatus.BUG_DETECTED

    def test_ambiguous_match_lists_top_candidates(self):
        candidates = [
            make_candidate(0.7 - i * 0.05, element_id=f"btn-{i}", index=i) for i in range(5)
        ]
        decision = self.policy.decide(candidates)

        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.AMBIGUOUS_MATCH
        assert decision.healed_selector is None
        assert [c.suggested_selector for c in decision.candidates] == ["#btn-0", "#btn-1", "#btn-2"]

    def test_no_candidates_is_a_bug(self):
        decision = self.policy.decide([])
        assert decision.status == HealingStatus.BUG_DETECTED
        assert decision.reason_code == ReasonCode.NO_CANDIDATES
        assert decision.confidence == 0.0

    def test_candidates_below_floor_count_as_none(self):
        decision = self.policy.decide([make_candidate(0.01)])
        assert decision.reason_code == ReasonCode.NO_CANDIDATES

    def test_low_confidence_is_a_bug(self):
        decision = self.policy.decide([make_candidate(0.3, element_id="x")])
        assert decision.status == HealingStatus.BUG_DETECTED
        assert decision.reason_code == ReasonCode.LOW_CONFIDENCE

    def test_repeated_misses_without_ui_change_are_ignored(self):
        history = ElementHistory(consecutive_misses=3)
        decision = self.policy.decide([make_candidate(0.3)], history)

        assert decision.status == HealingStatus.IGNORED
        assert decision.reason_code == ReasonCode.ELEMENT_REMOVED

    def test_ui_change_keeps_bug_status(self):
        history = ElementHistory(consecutive_misses=5, ui_change_detected=True)
        assert self.policy.decide([], history).status == HealingStatus.BUG_DETECTED

    def test_too_few_misses_keeps_bug_status(self):
        history = ElementHistory(consecutive_misses=2)
        assert self.policy.decide([], history).status == HealingStatus.BUG_DETECTED

    def test_high_score_without_stable_selector_goes_to_review(self):
        candidate = make_candidate(0.95, tag="div", text="x" * 80)
        decision = self.policy.decide([candidate])

        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.NO_STABLE_SELECTOR

    def test_escalate(self):
        decision = self.policy.escalate(ReasonCode.SNAPSHOT_TOO_LARGE, "too big")
        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.confidence == 0.0
        assert decision.detail == "too big"


class TestSelectorSynthesizer:
    """Ordered synthesis strategies."""

    def setup_method(self):
        self.synth = SelectorSynthesizer(["data-testid", "data-cy"])

    def test_strategy_order(self):
        assert [s.name for s in SYNTHESIS_STRATEGIES] == ["test-id", "id", "class-combination", "tag-text"]

    def test_test_id_beats_id(self):
        candidate = make_candidate(1.0, element_id="main", attributes={"data-cy": "go"})
        assert self.synth.synthesize(candidate) == ('[data-cy="go"]', "test-id")

    def test_id_with_unusual_characters_is_quoted(self):
        candidate = make_candidate(1.0, element_id="user:name")
        assert self.synth.synthesize(candidate) == ('[id="user:name"]', "id")

    def test_class_combination_must_be_unique(self):
        tree = DOMAnalyzer().parse(
            '<button class="btn primary">A</button><button class="btn">B</button>'
        )
        unique = make_candidate(1.0, classes=["btn", "primary"], text="A")
        shared = make_candidate(1.0, classes=["btn"], text="B", index=1)

        assert self.synth.synthesize(unique, tree) == ("button.btn.primary", "class-combination")
        assert self.synth.synthesize(shared, tree) == ('button:has-text("B")', "tag-text")

    def test_shared_test_id_falls_through_to_id(self):
        tree = DOMAnalyzer().parse(
            '<form><button data-testid="login-btn" id="btn-login-new">Sign in</button>'
            '<button data-testid="login-btn">Cancel</button></form>'
        )
        candidate = make_candidate(1.0, element_id="btn-login-new",
                                   attributes={"data-testid": "login-btn", "id": "btn-login-new"})

        selector, strategy = self.synth.synthesize(candidate, tree)

        assert (selector, strategy) == ("#btn-login-new", "id")
        assert self.synth.is_unique(selector, tree)

    def test_every_strategy_result_is_unique(self):
        """Twin elements leave no selector that singles one out."""
        tree = DOMAnalyzer().parse(
            '<form><button data-testid="login-btn" class="btn">Go</button>'
            '<button data-testid="login-btn" class="btn">Go</button></form>'
        )
        candidate = make_candidate(1.0, classes=["btn"], text="Go",
                                   attributes={"data-testid": "login-btn", "class": "btn"})

        assert self.synth.synthesize(candidate, tree) == (None, None)

    def test_ambiguous_test_id_is_not_auto_healed(self):
        tree = DOMAnalyzer().parse(
            '<form><button data-testid="login-btn">Go</button>'
            '<button data-testid="login-btn">Go</button></form>'
        )
        candidate = make_candidate(0.95, text="Go", attributes={"data-testid": "login-btn"})

        decision = HealingPolicy().decide([candidate], tree=tree)

        assert decision.status == HealingStatus.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.NO_STABLE_SELECTOR
        assert decision.healed_selector is None

    def test_nothing_applies(self):
        assert self.synth.synthesize(make_candidate(1.0)) == (None, None)


class TestTransitions:
    """Healing event state machine."""

    @pytest.mark.parametrize("target", [
        HealingStatus.HEALED_AUTO, HealingStatus.NEEDS_REVIEW,
        HealingStatus.BUG_DETECTED, HealingStatus.IGNORED,
    ])
    def test_from_pending(self, target):
        assert transition(HealingStatus.PENDING, target) == target

    @pytest.mark.parametrize("current,target", [
        (HealingStatus.PENDING, HealingStatus.HEALED_MANUAL),
        (HealingStatus.HEALED_AUTO, HealingStatus.NEEDS_REVIEW),
        (HealingStatus.BUG_DETECTED, HealingStatus.HEALED_MANUAL),
        (HealingStatus.IGNORED, HealingStatus.HEALED_MANUAL),
        (HealingStatus.HEALED_MANUAL, HealingStatus.IGNORED),
        (HealingStatus.NEEDS_REVIEW, HealingStatus.HEALED_AUTO),
    ])
    def test_rejected_transitions(self, current, target):
        with pytest.raises(InvalidTransition):
            transition(current, target)


class TestReview:
    """Human review actions."""

    def setup_method(self):
        self.policy = HealingPolicy()
        self.event = HealingEvent(
            run_id="run-1",
            test_name="Checkout Flow",
            original_selector="#pay",
            status=HealingStatus.NEEDS_REVIEW,
            reason_code=ReasonCode.AMBIGUOUS_MATCH,
            candidates=[
                CandidateMatch(path="p/a", tag="button", score=0.7, depth=1, document_index=3,
                               suggested_selector="#pay-now"),
                CandidateMatch(path="p/b", tag="button", score=0.6, depth=1, document_index=4,
                               suggested_selector='[data-testid="pay"]'),
            ],
        )

    def test_accept_uses_top_suggestion(self):
        reviewed = self.policy.review(self.event, ReviewAction.ACCEPT, applied_by="qa@example.com")

        assert reviewed.status == HealingStatus.HEALED_MANUAL
        assert reviewed.healed_selector == "#pay-now"
        assert reviewed.new_selector_type == SelectorType.ID
        assert reviewed.action_taken == "manual_fix"
        assert reviewed.applied_by == "qa@example.com"
        assert reviewed.applied_at is not None
        assert self.event.status == HealingStatus.NEEDS_REVIEW

    def test_accept_chosen_candidate(self):
        reviewed = self.policy.review(self.event, ReviewAction.ACCEPT, candidate_index=1)

        assert reviewed.healed_selector == '[data-testid="pay"]'
        assert reviewed.new_selector_type == SelectorType.TESTID
        assert reviewed.element_path == "p/b"
        assert reviewed.confidence == 0.6

    def test_accept_explicit_selector(self):
        reviewed = self.policy.review(self.event, ReviewAction.ACCEPT, selector=" button.pay ")
        assert reviewed.healed_selector == "button.pay"

    def test_accept_rejects_unparseable_selector(self):
        with pytest.raises(UnsupportedSelectorSyntax):
            self.policy.review(self.event, ReviewAction.ACCEPT, selector="div > .pay")

    def test_accept_rejects_missing_candidate(self):
        with pytest.raises(InvalidTransition):
            self.policy.review(self.event, ReviewAction.ACCEPT, candidate_index=7)

    @pytest.mark.parametrize("action,status,taken", [
        (ReviewAction.IGNORE, HealingStatus.IGNORED, "ignored"),
        (ReviewAction.REJECT, HealingStatus.BUG_DETECTED, "rejected_suggestion"),
        (ReviewAction.MARK_BUG, HealingStatus.BUG_DETECTED, "marked_as_bug"),
    ])
    def test_other_actions(self, action, status, taken):
        reviewed = self.policy.review(self.event, action)
        assert reviewed.status == status
        assert reviewed.action_taken == taken
        assert reviewed.healed_selector is None

    def test_review_requires_needs_review(self):
        healed = self.policy.review(self.event, ReviewAction.ACCEPT)
        with pytest.raises(InvalidTransition):
            self.policy.review(healed, ReviewAction.IGNORE)
