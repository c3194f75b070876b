"""
Selector healing pipeline.

parse snapshot -> parse selector -> rank candidates -> decide

The engine is pure: it keeps no state between calls and never touches
storage. Failures that make a snapshot or selector impossible to evaluate
are turned into NEEDS_REVIEW decisions instead of propagating.
"""

import time
from typing import Optional, Union

from ..core.exceptions import InvalidSnapshot, SnapshotTooLarge, UnsupportedSelectorSyntax
from ..core.logging_config import get_healing_logger
from ..core.models import ElementHistory, HealingConfiguration, HealingDecision, ReasonCode
from .dom_analyzer import DEFAULT_MAX_SNAPSHOT_BYTES, DOMAnalyzer
from .healing_policy import HealingPolicy
from .selector_parser import SelectorParser
from .similarity_scorer import SimilarityScorer


class HealingEngine:
    """Runs one failed selector through the healing pipeline."""

    def __init__(self, config: Optional[HealingConfiguration] = None,
                 max_snapshot_bytes: int = DEFAULT_MAX_SNAPSHOT_BYTES,
                 dom_analyzer: Optional[DOMAnalyzer] = None,
                 parser: Optional[SelectorParser] = None,
                 scorer: Optional[SimilarityScorer] = None,
                 policy: Optional[HealingPolicy] = None):
        self.config = config or HealingConfiguration()
        self.dom_analyzer = dom_analyzer or DOMAnalyzer(max_snapshot_bytes)
        self.parser = parser or SelectorParser()
        self.scorer = scorer or SimilarityScorer(self.config.weights, self.config.test_id_attributes)
        self.policy = policy or HealingPolicy(self.config)
        self.logger = get_healing_logger("engine")

    def heal(self, snapshot: Optional[Union[str, bytes]], selector: Optional[str],
             history: Optional[ElementHistory] = None) -> HealingDecision:
        """
        Decide how to heal a selector that no longer matches.

        Args:
            snapshot: DOM captured when the test failed
            selector: The locator that stopped matching
            history: Optional last-known position and miss streak

        Returns:
            HealingDecision; never raises for bad input
        """
        start_time = time.time()

        if not selector or not selector.strip():
            return self._escalate(ReasonCode.MISSING_SELECTOR, "no selector was reported", start_time)
        if snapshot is None or (isinstance(snapshot, (str, bytes)) and not snapshot.strip()):
            return self._escalate(ReasonCode.MISSING_SNAPSHOT, "no DOM snapshot was captured", start_time)

        try:
            tree = self.dom_analyzer.parse(snapshot)
        except SnapshotTooLarge as e:
            return self._escalate(ReasonCode.SNAPSHOT_TOO_LARGE, e.message, start_time)
        except InvalidSnapshot as e:
            return self._escalate(ReasonCode.INVALID_SNAPSHOT, e.message, start_time)

        try:
            predicate = self.parser.parse(selector)
        except UnsupportedSelectorSyntax as e:
            return self._escalate(ReasonCode.UNSUPPORTED_SELECTOR, e.message, start_time)

        candidates = self.scorer.match(
            tree, predicate, history,
            floor=self.config.candidate_floor,
            limit=self.config.max_candidates,
        )
        decision = self.policy.decide(candidates, history, tree)

        self.logger.log_operation_success(
            "heal", time.time() - start_time,
            selector=selector,
            status=decision.status.value,
            reason=decision.reason_code.value,
            confidence=decision.confidence,
            candidates=len(candidates),
        )
        return decision

    def _escalate(self, reason: ReasonCode, detail: str, start_time: float) -> HealingDecision:
        self.logger.log_operation_failure(
            "heal", time.time() - start_time, detail, error_code=reason.value
        )
        return self.policy.escalate(reason, detail)
