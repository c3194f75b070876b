"""
Similarity scoring for candidate element matching.

Ranks every element of a parsed snapshot against the predicate of the
selector that stopped matching. The score is a weighted sum of
normalized terms:

    tag         exact tag equality
    id          edit-distance ratio against the element's identifying values
    classes     Jaccard similarity of class sets
    attributes  fraction of attribute predicates satisfied
    text        edit-distance ratio of the text predicate vs element text
    structure   1 - normalized path edit distance to the last known position

Only the terms the selector (or the history) actually constrains take
part; their weights are rescaled to sum to 1. Scoring is pure: the same
tree, predicate and history always produce the same ordered list.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.models import CandidateMatch, ElementHistory, ScoreBreakdown
from ..core.models.healing_models import DEFAULT_TEST_ID_ATTRIBUTES, DEFAULT_WEIGHTS
from .dom_analyzer import ElementNode, ElementTree, normalize_text
from .selector_parser import SelectorPredicate


logger = logging.getLogger(__name__)

# Elements that never carry an interactive target
NON_CANDIDATE_TAGS = frozenset({
    "head", "script", "style", "meta", "link", "title", "noscript", "template", "base",
})

MAX_TEXT_LENGTH = 200
SCORE_PRECISION = 6


def levenshtein_distance(s1: Sequence, s2: Sequence) -> int:
    """Calculate Levenshtein (edit) distance between two sequences."""
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


class SimilarityScorer:
    """
    Weighted multi-term scorer that ranks snapshot elements as successors
    of the element a broken selector used to find.
    """

    def __init__(self,
                 weights: Optional[Dict[str, float]] = None,
                 test_id_attributes: Optional[List[str]] = None):
        """
        Initialize the similarity scorer.

        Args:
            weights: Optional per-term weights overriding the defaults
            test_id_attributes: Attributes that carry explicit test ids, in priority order
        """
        self.weights = dict(DEFAULT_WEIGHTS)
        if weights:
            self.weights.update(weights)
        self.test_id_attributes = list(test_id_attributes or DEFAULT_TEST_ID_ATTRIBUTES)

        self._levenshtein_cache: Dict[Tuple[str, str], int] = {}

    def active_weights(self, predicate: SelectorPredicate,
                       history: Optional[ElementHistory] = None) -> Dict[str, float]:
        """Weights of the terms this predicate constrains, rescaled to sum to 1."""
        active = []
        if predicate.tag:
            active.append("tag")
        if predicate.element_id is not None:
            active.append("id")
        if predicate.classes:
            active.append("classes")
        if predicate.attributes:
            active.append("attributes")
        if predicate.text is not None:
            active.append("text")
        if history is not None and history.last_known_path:
            active.append("structure")

        total = sum(self.weights.get(term, 0.0) for term in active)
        if total <= 0:
            return {}
        return {term: self.weights.get(term, 0.0) / total for term in active}

    def score(self, node: ElementNode, predicate: SelectorPredicate,
              history: Optional[ElementHistory] = None,
              weights: Optional[Dict[str, float]] = None) -> Tuple[float, ScoreBreakdown]:
        """
        Score one element against the predicate.

        Returns:
            Tuple of (score in [0, 1], per-term breakdown)
        """
        if weights is None:
            weights = self.active_weights(predicate, history)

        terms = {}
        for term in weights:
            if term == "tag":
                terms[term] = 1.0 if node.tag == predicate.tag else 0.0
            elif term == "id":
                terms[term] = self._id_similarity(predicate.element_id, node)
            elif term == "classes":
                terms[term] = self._jaccard_similarity(predicate.classes, node.classes)
            elif term == "attributes":
                terms[term] = self._attribute_overlap(predicate, node)
            elif term == "text":
                terms[term] = self._text_similarity(predicate, node)
            elif term == "structure":
                terms[term] = self._structural_proximity(history.last_known_path, node)

        total = sum(terms[term] * weights[term] for term in terms)
        total = round(min(1.0, max(0.0, total)), SCORE_PRECISION)
        return total, ScoreBreakdown(terms=terms, weights=dict(weights))

    def match(self, tree: ElementTree, predicate: SelectorPredicate,
              history: Optional[ElementHistory] = None,
              floor: float = 0.0,
              limit: Optional[int] = None) -> List[CandidateMatch]:
        """
        Rank the elements of a tree against a predicate.

        Args:
            tree: Parsed snapshot
            predicate: Parsed selector
            history: Optional last-known position of the element
            floor: Minimum score for an element to be returned
            limit: Return at most this many candidates

        Returns:
            Candidates with a positive score at or above ``floor``, highest
            score first. Equal scores prefer the smaller depth difference to
            the last known position, then document order.
        """
        weights = self.active_weights(predicate, history)
        if not weights:
            return []

        known_depth = history.last_known_depth if history is not None else None

        scored = []
        for node in tree:
            if node.tag in NON_CANDIDATE_TAGS:
                continue
            score, breakdown = self.score(node, predicate, history, weights)
            if score <= 0.0 or score < floor:
                continue
            depth_delta = abs(node.depth - known_depth) if known_depth is not None else 0
            scored.append((-score, depth_delta, node.document_index, node, breakdown))

        scored.sort(key=lambda item: item[:3])
        if limit is not None:
            scored = scored[:limit]

        candidates = [
            CandidateMatch(
                path=node.path,
                tag=node.tag,
                score=-neg_score,
                depth=node.depth,
                document_index=node.document_index,
                element_id=node.element_id,
                classes=list(node.classes),
                attributes=dict(node.attributes),
                text=(node.text or node.full_text)[:MAX_TEXT_LENGTH],
                breakdown=breakdown,
            )
            for neg_score, _, _, node, breakdown in scored
        ]

        if candidates:
            logger.debug(f"Top candidate {candidates[0].path} scored {candidates[0].score:.3f} "
                         f"for {predicate.source!r} ({len(candidates)} candidates)")
        return candidates

    # =================== Term Functions ===================

    def identifying_values(self, node: ElementNode) -> List[str]:
        """The element's id followed by its explicit test-id attribute values."""
        values = []
        if node.element_id:
            values.append(node.element_id)
        for name in self.test_id_attributes:
            value = node.attributes.get(name)
            if value and value not in values:
                values.append(value)
        return values

    def _id_similarity(self, expected: str, node: ElementNode) -> float:
        values = self.identifying_values(node)
        if not values:
            return 0.0
        return max(self._levenshtein_similarity(expected, value) for value in values)

    def _levenshtein_similarity(self, a: str, b: str) -> float:
        """
        Levenshtein distance normalized to similarity score [0, 1].

        Cached for performance on repeated calls.
        """
        if not a and not b:
            return 1.0
        if not a or not b:
            return 0.0

        cache_key = (a, b)
        distance = self._levenshtein_cache.get(cache_key)
        if distance is None:
            distance = levenshtein_distance(a, b)
            self._levenshtein_cache[cache_key] = distance

        return 1.0 - (distance / max(len(a), len(b)))

    def _jaccard_similarity(self, a: List[str], b: List[str]) -> float:
        """J(A,B) = |A ∩ B| / |A ∪ B| over class names."""
        set_a, set_b = set(a), set(b)
        if not set_a and not set_b:
            return 1.0
        union = set_a | set_b
        return len(set_a & set_b) / len(union)

    def _attribute_overlap(self, predicate: SelectorPredicate, node: ElementNode) -> float:
        satisfied = sum(
            1 for attr in predicate.attributes if attr.matches(node.attributes.get(attr.name))
        )
        return satisfied / len(predicate.attributes)

    def _text_similarity(self, predicate: SelectorPredicate, node: ElementNode) -> float:
        expected = normalize_text(predicate.text).lower()
        actual = (node.text or node.full_text)[:MAX_TEXT_LENGTH].lower()
        if predicate.text_match == "contains" and expected and expected in actual:
            return 1.0
        return self._levenshtein_similarity(expected, actual)

    def _structural_proximity(self, last_known_path: str, node: ElementNode) -> float:
        expected = [seg for seg in last_known_path.split("/") if seg]
        actual = node.path_segments
        longest = max(len(expected), len(actual))
        if longest == 0:
            return 1.0
        return 1.0 - levenshtein_distance(expected, actual) / longest
