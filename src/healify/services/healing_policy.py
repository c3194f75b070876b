"""
Healing decision policy.

Turns ranked candidates into a decision and owns the healing-event state
machine:

    PENDING -> HEALED_AUTO | NEEDS_REVIEW | BUG_DETECTED | IGNORED
    NEEDS_REVIEW -> HEALED_MANUAL | IGNORED | BUG_DETECTED   (human review)

Replacement selectors come from an ordered strategy table; the first
strategy that yields a selector for the winning candidate is used.
"""

import re
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from ..core.exceptions import InvalidTransition, UnsupportedSelectorSyntax
from ..core.models import (
    CandidateMatch, ElementHistory, HealingConfiguration, HealingDecision,
    HealingEvent, HealingStatus, ReasonCode, ReviewAction,
)
from .dom_analyzer import ElementTree
from .selector_analyzer import SelectorAnalyzer
from .selector_parser import SelectorParser, quote

logger = logging.getLogger(__name__)

_PLAIN_IDENT = re.compile(r"^[A-Za-z_][\w-]*$")
MAX_TEXT_SELECTOR_LENGTH = 50


@dataclass(frozen=True)
class SynthesisStrategy:
    """One row of the selector synthesis table."""
    name: str
    build: Callable[['SelectorSynthesizer', CandidateMatch, Optional[ElementTree]], Optional[str]]


def _test_id_selector(synth: 'SelectorSynthesizer', candidate: CandidateMatch,
                      tree: Optional[ElementTree]) -> Optional[str]:
    for name in synth.test_id_attributes:
        value = candidate.attributes.get(name)
        if value:
            return f"[{name}={quote(value)}]"
    return None


def _id_selector(synth: 'SelectorSynthesizer', candidate: CandidateMatch,
                 tree: Optional[ElementTree]) -> Optional[str]:
    if not candidate.element_id:
        return None
    if _PLAIN_IDENT.match(candidate.element_id):
        return f"#{candidate.element_id}"
    return f"[id={quote(candidate.element_id)}]"


def _class_selector(synth: 'SelectorSynthesizer', candidate: CandidateMatch,
                    tree: Optional[ElementTree]) -> Optional[str]:
    classes = [cls for cls in candidate.classes if _PLAIN_IDENT.match(cls)]
    if not classes:
        return None
    return candidate.tag + "".join(f".{cls}" for cls in classes)


def _text_selector(synth: 'SelectorSynthesizer', candidate: CandidateMatch,
                   tree: Optional[ElementTree]) -> Optional[str]:
    text = candidate.text.strip()
    if not text or len(text) > MAX_TEXT_SELECTOR_LENGTH:
        return None
    return f"{candidate.tag}:has-text({quote(text)})"


SYNTHESIS_STRATEGIES: Tuple[SynthesisStrategy, ...] = (
    SynthesisStrategy("test-id", _test_id_selector),
    SynthesisStrategy("id", _id_selector),
    SynthesisStrategy("class-combination", _class_selector),
    SynthesisStrategy("tag-text", _text_selector),
)


class SelectorSynthesizer:
    """Builds a replacement selector for a candidate from the strategy table."""

    def __init__(self, test_id_attributes: List[str],
                 strategies: Tuple[SynthesisStrategy, ...] = SYNTHESIS_STRATEGIES,
                 parser: Optional[SelectorParser] = None):
        self.test_id_attributes = list(test_id_attributes)
        self.strategies = strategies
        self.parser = parser or SelectorParser()

    def synthesize(self, candidate: CandidateMatch,
                   tree: Optional[ElementTree] = None) -> Tuple[Optional[str], Optional[str]]:
        """
        Try each strategy in order and keep the first selector that matches
        exactly one element of the tree.

        Returns:
            Tuple of (selector, strategy name), or (None, None) when no
            strategy yields a unique selector for the candidate
        """
        for strategy in self.strategies:
            selector = strategy.build(self, candidate, tree)
            if selector and self.is_unique(selector, tree):
                return selector, strategy.name
        return None, None

    def is_unique(self, selector: str, tree: Optional[ElementTree]) -> bool:
        """True if the selector matches exactly one element of the tree."""
        if tree is None:
            return True
        try:
            predicate = self.parser.parse(selector)
        except UnsupportedSelectorSyntax:
            return False
        return len(tree.select(predicate.matches)) == 1


ALLOWED_TRANSITIONS: Dict[HealingStatus, FrozenSet[HealingStatus]] = {
    HealingStatus.PENDING: frozenset({
        HealingStatus.HEALED_AUTO, HealingStatus.NEEDS_REVIEW,
        HealingStatus.BUG_DETECTED, HealingStatus.IGNORED,
    }),
    HealingStatus.NEEDS_REVIEW: frozenset({
        HealingStatus.HEALED_MANUAL, HealingStatus.IGNORED, HealingStatus.BUG_DETECTED,
    }),
}

REVIEW_OUTCOMES: Dict[ReviewAction, Tuple[HealingStatus, str]] = {
    ReviewAction.ACCEPT: (HealingStatus.HEALED_MANUAL, "manual_fix"),
    ReviewAction.REJECT: (HealingStatus.BUG_DETECTED, "rejected_suggestion"),
    ReviewAction.IGNORE: (HealingStatus.IGNORED, "ignored"),
    ReviewAction.MARK_BUG: (HealingStatus.BUG_DETECTED, "marked_as_bug"),
}


def transition(current: HealingStatus, target: HealingStatus) -> HealingStatus:
    """Validate a status change against the state machine."""
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current.value, target.value)
    return target


class HealingPolicy:
    """Maps matcher output to a healing decision."""

    def __init__(self, config: Optional[HealingConfiguration] = None,
                 synthesizer: Optional[SelectorSynthesizer] = None,
                 selector_analyzer: Optional[SelectorAnalyzer] = None):
        self.config = config or HealingConfiguration()
        self.synthesizer = synthesizer or SelectorSynthesizer(self.config.test_id_attributes)
        self.selector_analyzer = selector_analyzer or SelectorAnalyzer()

    def decide(self, candidates: List[CandidateMatch],
               history: Optional[ElementHistory] = None,
               tree: Optional[ElementTree] = None) -> HealingDecision:
        """
        Decide what to do with a failure given the ranked candidates.

        Args:
            candidates: Matcher output, highest score first
            history: Optional history of this test's selector
            tree: Parsed snapshot, used to check that a synthesized selector is unique

        Returns:
            HealingDecision with status, confidence and reason code
        """
        viable = [c for c in candidates if c.score >= self.config.candidate_floor]
        top_score = candidates[0].score if candidates else 0.0

        if not viable:
            return self._low_confidence(top_score, ReasonCode.NO_CANDIDATES, history)

        top = viable[0]
        if top.score >= self.config.auto_heal_threshold:
            selector, strategy = self.synthesizer.synthesize(top, tree)
            if selector:
                top = replace(top, suggested_selector=selector)
                return HealingDecision(
                    status=transition(HealingStatus.PENDING, HealingStatus.HEALED_AUTO),
                    confidence=top.score,
                    reason_code=ReasonCode.HIGH_CONFIDENCE_MATCH,
                    healed_selector=selector,
                    strategy=strategy,
                    candidates=[top],
                    element_path=top.path,
                )
            return self._review(viable, tree, ReasonCode.NO_STABLE_SELECTOR,
                                "winning candidate has no stable identifying attribute")

        if top.score >= self.config.review_threshold:
            return self._review(viable, tree, ReasonCode.AMBIGUOUS_MATCH)

        return self._low_confidence(top.score, ReasonCode.LOW_CONFIDENCE, history)

    def escalate(self, reason_code: ReasonCode, detail: Optional[str] = None) -> HealingDecision:
        """Decision for a failure the pipeline cannot evaluate."""
        return HealingDecision(
            status=transition(HealingStatus.PENDING, HealingStatus.NEEDS_REVIEW),
            confidence=0.0,
            reason_code=reason_code,
            detail=detail,
        )

    def presumed_removed(self, history: Optional[ElementHistory]) -> bool:
        """The selector kept missing with no UI change to explain it."""
        return (
            history is not None
            and history.consecutive_misses >= self.config.ignore_after_consecutive_misses
            and not history.ui_change_detected
        )

    def review(self, event: HealingEvent, action: ReviewAction,
               selector: Optional[str] = None,
               candidate_index: Optional[int] = None,
               applied_by: Optional[str] = None) -> HealingEvent:
        """
        Apply a human review action to a NEEDS_REVIEW event.

        Returns:
            A new HealingEvent carrying the resolved status

        Raises:
            InvalidTransition: If the event is not awaiting review or there
                is no selector to accept
            UnsupportedSelectorSyntax: If an explicit selector cannot be parsed
        """
        target, action_taken = REVIEW_OUTCOMES[action]
        transition(event.status, target)

        changes = {
            "status": target,
            "action_taken": action_taken,
            "applied_by": applied_by or "user",
            "applied_at": datetime.now(),
        }

        if action is ReviewAction.ACCEPT:
            chosen = self._accepted_selector(event, selector, candidate_index)
            changes["healed_selector"] = chosen
            changes["new_selector_type"] = self.selector_analyzer.classify(chosen)
            changes["reason_code"] = ReasonCode.MANUAL_REVIEW
            if candidate_index is not None and selector is None:
                changes["element_path"] = event.candidates[candidate_index].path
                changes["confidence"] = event.candidates[candidate_index].score

        return replace(event, **changes)

    def _accepted_selector(self, event: HealingEvent, selector: Optional[str],
                           candidate_index: Optional[int]) -> str:
        if selector is not None:
            self.synthesizer.parser.parse(selector)
            return selector.strip()

        if candidate_index is not None:
            if candidate_index < 0 or candidate_index >= len(event.candidates):
                raise InvalidTransition(event.status.value, HealingStatus.HEALED_MANUAL.value,
                                        f"candidate {candidate_index} does not exist")
            chosen = event.candidates[candidate_index].suggested_selector
        else:
            chosen = event.healed_selector or next(
                (c.suggested_selector for c in event.candidates if c.suggested_selector), None
            )

        if not chosen:
            raise InvalidTransition(event.status.value, HealingStatus.HEALED_MANUAL.value,
                                    "no suggestion available to accept")
        return chosen

    def _review(self, viable: List[CandidateMatch], tree: Optional[ElementTree],
                reason_code: ReasonCode, detail: Optional[str] = None) -> HealingDecision:
        shortlisted = []
        for candidate in viable[:self.config.review_candidates]:
            suggestion, _ = self.synthesizer.synthesize(candidate, tree)
            shortlisted.append(replace(candidate, suggested_selector=suggestion))

        return HealingDecision(
            status=transition(HealingStatus.PENDING, HealingStatus.NEEDS_REVIEW),
            confidence=viable[0].score,
            reason_code=reason_code,
            candidates=shortlisted,
            element_path=viable[0].path,
            detail=detail,
        )

    def _low_confidence(self, score: float, reason_code: ReasonCode,
                        history: Optional[ElementHistory]) -> HealingDecision:
        if self.presumed_removed(history):
            return HealingDecision(
                status=transition(HealingStatus.PENDING, HealingStatus.IGNORED),
                confidence=score,
                reason_code=ReasonCode.ELEMENT_REMOVED,
                detail=f"selector missed in {history.consecutive_misses} consecutive runs",
            )
        return HealingDecision(
            status=transition(HealingStatus.PENDING, HealingStatus.BUG_DETECTED),
            confidence=score,
            reason_code=reason_code,
        )
