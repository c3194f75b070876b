"""
Selector robustness analysis.

Classifies locator strings into selector families and scores how likely
each is to survive UI changes, with a short recommendation for risky ones.
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from ..core.models import SelectorType
from ..core.models.healing_models import DEFAULT_TEST_ID_ATTRIBUTES

logger = logging.getLogger(__name__)

BASE_SCORES = {
    SelectorType.TESTID: 0.98,
    SelectorType.ROLE: 0.92,
    SelectorType.TEXT: 0.75,
    SelectorType.CSS: 0.65,
    SelectorType.ID: 0.65,
    SelectorType.CLASS: 0.65,
    SelectorType.XPATH: 0.30,
    SelectorType.UNKNOWN: 0.50,
}

MIN_SCORE = 0.05
MAX_SCORE = 1.0

RECOMMENDATIONS = (
    (0.85, None),
    (0.65, "Consider using a data-testid for better stability."),
    (0.40, "Medium risk. This selector might break if the UI layout changes slightly."),
    (0.0, "Critical risk. High probability of test failure on minor UI updates. "
          "Use data-testid or Role-based selectors."),
)

# Class names generated by CSS-in-JS tooling mix letters and digits
_HASHED_CLASS = re.compile(r"\.(?=[a-z]*\d)(?=\d*[a-z])[a-z0-9]{5,}", re.IGNORECASE)
_ID_ONLY = re.compile(r"^#[\w-]+$")
_CLASS_ONLY = re.compile(r"^[a-z][\w-]*(?:\.[\w-]+)+$|^(?:\.[\w-]+)+$", re.IGNORECASE)
_ROLE = re.compile(r"^role\s*=|\[role\s*=|getByRole\(", re.IGNORECASE)
_TEXT = re.compile(r"^(?:text|link)\s*=|:(?:has-text|text-is|text)\(|getByText\(", re.IGNORECASE)


@dataclass
class AnalyzedSelector:
    """Robustness verdict for one selector."""
    selector: str
    selector_type: SelectorType
    score: float
    recommendation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selector": self.selector,
            "selector_type": self.selector_type.value,
            "score": self.score,
            "recommendation": self.recommendation,
        }


class SelectorAnalyzer:
    """Scores selectors by how stable they are against UI changes."""

    def __init__(self, test_id_attributes: Optional[List[str]] = None):
        self.test_id_attributes = list(test_id_attributes or DEFAULT_TEST_ID_ATTRIBUTES)

    def classify(self, selector: str) -> SelectorType:
        """Determine the selector family of a locator string."""
        selector = (selector or "").strip()
        if not selector:
            return SelectorType.UNKNOWN

        lowered = selector.lower()
        if lowered.startswith(("testid=", "data-testid=")) or any(
            f"[{name}" in lowered for name in self.test_id_attributes
        ):
            return SelectorType.TESTID
        if _ROLE.search(selector):
            return SelectorType.ROLE
        if _TEXT.search(selector):
            return SelectorType.TEXT
        if lowered.startswith(("/", "(", "xpath=")):
            return SelectorType.XPATH
        if lowered.startswith("id=") or _ID_ONLY.match(selector):
            return SelectorType.ID
        if lowered.startswith("class=") or _CLASS_ONLY.match(selector):
            return SelectorType.CLASS
        return SelectorType.CSS

    def calculate_score(self, selector: str, selector_type: SelectorType) -> float:
        """Robustness score in [0.05, 1.0] for a selector of the given family."""
        score = BASE_SCORES.get(selector_type, BASE_SCORES[SelectorType.UNKNOWN])

        if selector_type in (SelectorType.CSS, SelectorType.ID, SelectorType.CLASS):
            if "[data-" in selector or "[aria-" in selector:
                score += 0.20
            if selector.startswith("#"):
                score -= 0.15
            if ":nth-" in selector:
                score -= 0.40
            steps = len(selector.split())
            if steps > 2:
                score -= 0.10 * (steps - 2)
            if _HASHED_CLASS.search(selector):
                score -= 0.20
        elif selector_type is SelectorType.XPATH:
            if "html/body" in selector:
                score -= 0.20
            if "div[" in selector or "span[" in selector:
                score -= 0.10

        return round(max(MIN_SCORE, min(MAX_SCORE, score)), 4)

    def get_recommendation(self, score: float) -> Optional[str]:
        for threshold, recommendation in RECOMMENDATIONS:
            if score >= threshold:
                return recommendation
        return RECOMMENDATIONS[-1][1]

    def analyze(self, selector: str, selector_type: Optional[SelectorType] = None) -> AnalyzedSelector:
        """
        Analyze a single selector.

        Args:
            selector: Locator string
            selector_type: Family override; classified from the string when omitted

        Returns:
            AnalyzedSelector with score and recommendation
        """
        selector_type = selector_type or self.classify(selector)
        score = self.calculate_score(selector, selector_type)
        return AnalyzedSelector(
            selector=selector,
            selector_type=selector_type,
            score=score,
            recommendation=self.get_recommendation(score),
        )

    def analyze_many(self, selectors: Iterable[str]) -> List[AnalyzedSelector]:
        """Analyze distinct selectors, weakest first."""
        seen = []
        for selector in selectors:
            if selector and selector not in seen:
                seen.append(selector)
        results = [self.analyze(selector) for selector in seen]
        results.sort(key=lambda r: (r.score, r.selector))
        return results
