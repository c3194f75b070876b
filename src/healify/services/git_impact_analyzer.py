"""
Change impact analysis for pushed commits.

Estimates from a list of changed file paths how likely a push is to break
UI selectors and which functional areas of the suite it touches. The
orchestrator uses the result as the UI-change signal when deciding whether
a selector that keeps missing refers to a removed element.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

HIGH_RISK_PATTERNS = [
    re.compile(r"\.(tsx|jsx)$"),
    re.compile(r"components?/", re.IGNORECASE),
    re.compile(r"pages?/", re.IGNORECASE),
    re.compile(r"app/", re.IGNORECASE),
    re.compile(r"styles?/", re.IGNORECASE),
    re.compile(r"layout\.", re.IGNORECASE),
]

MEDIUM_RISK_PATTERNS = [
    re.compile(r"\.(ts|js)$"),
    re.compile(r"api/", re.IGNORECASE),
    re.compile(r"hooks?/", re.IGNORECASE),
    re.compile(r"lib/", re.IGNORECASE),
    re.compile(r"utils?/", re.IGNORECASE),
]

LOW_RISK_PATTERNS = [
    re.compile(r"\.(md|txt|json|yml|yaml)$"),
    re.compile(r"\.env"),
    re.compile(r"README", re.IGNORECASE),
    re.compile(r"CHANGELOG", re.IGNORECASE),
    re.compile(r"\.gitignore"),
    re.compile(r"package-lock\.json"),
]

FILE_WEIGHTS = {"high": 0.25, "medium": 0.12, "low": 0.02, "other": 0.08}
MAX_RISK = 0.98
EMPTY_CHANGE_RISK = 0.1
HEALING_NEED_THRESHOLD = 0.4

RISK_LEVELS = ((0.75, "critical"), (0.5, "high"), (0.25, "medium"), (0.0, "low"))

TEST_AREAS = [
    (("login", "auth", "signin"), "Login / Auth Flow"),
    (("checkout", "payment", "stripe"), "Checkout & Payment"),
    (("product", "catalog", "search"), "Product Catalog"),
    (("dashboard", "metrics", "analytics"), "Dashboard Metrics"),
    (("settings", "profile", "account"), "User Settings"),
    (("nav", "header", "layout", "footer"), "Navigation & Layout"),
    (("form", "input", "button"), "Form Interactions"),
    (("api", "route", "endpoint"), "API Integration"),
    (("modal", "dialog", "drawer"), "Modal & Overlays"),
    (("table", "list", "grid"), "Data Tables & Lists"),
]
DEFAULT_TEST_AREA = "General Sanity"


@dataclass
class GitImpact:
    """Impact estimate for one set of changed files."""
    changed_files: List[str] = field(default_factory=list)
    impacted_tests: List[str] = field(default_factory=list)
    risk_score: float = EMPTY_CHANGE_RISK
    risk_level: str = "low"
    high_risk_files: List[str] = field(default_factory=list)
    summary: str = ""

    @property
    def ui_change_detected(self) -> bool:
        return bool(self.high_risk_files) or self.risk_level in ("high", "critical")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changed_files": list(self.changed_files),
            "impacted_tests": list(self.impacted_tests),
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "high_risk_files": list(self.high_risk_files),
            "ui_change_detected": self.ui_change_detected,
            "summary": self.summary,
        }


class GitImpactAnalyzer:
    """Rates changed files by how likely they are to break UI selectors."""

    def classify_file(self, path: str) -> str:
        """Return the risk bucket of one changed file."""
        if any(p.search(path) for p in HIGH_RISK_PATTERNS):
            return "high"
        if any(p.search(path) for p in MEDIUM_RISK_PATTERNS):
            return "medium"
        if any(p.search(path) for p in LOW_RISK_PATTERNS):
            return "low"
        return "other"

    def analyze(self, changed_files: Optional[List[str]]) -> GitImpact:
        """
        Analyze the files changed by a push.

        Args:
            changed_files: Repository-relative file paths

        Returns:
            GitImpact with risk score, level and impacted test areas
        """
        files = [f for f in (changed_files or []) if f]
        if not files:
            return GitImpact(
                risk_score=EMPTY_CHANGE_RISK,
                risk_level=self.risk_level(EMPTY_CHANGE_RISK),
                impacted_tests=[DEFAULT_TEST_AREA],
                summary="No file changes detected in this push.",
            )

        buckets = [self.classify_file(f) for f in files]
        score = min(MAX_RISK, sum(FILE_WEIGHTS[b] for b in buckets))
        score = round(score, 4)
        level = self.risk_level(score)
        impacted = self.infer_impacted_tests(files)

        impact = GitImpact(
            changed_files=files,
            impacted_tests=impacted,
            risk_score=score,
            risk_level=level,
            high_risk_files=[f for f, b in zip(files, buckets) if b == "high"],
            summary=(
                f"{level.upper()} risk: {len(files)} file(s) changed. "
                f"{len(impacted)} test area(s) may be affected: {', '.join(impacted)}."
            ),
        )
        logger.debug(f"Change impact {level} ({score}) for {len(files)} files")
        return impact

    def risk_level(self, score: float) -> str:
        for threshold, level in RISK_LEVELS:
            if score >= threshold:
                return level
        return "low"

    def infer_impacted_tests(self, files: List[str]) -> List[str]:
        areas = []
        for path in files:
            lower = path.lower()
            for keywords, area in TEST_AREAS:
                if area not in areas and any(k in lower for k in keywords):
                    areas.append(area)
        return areas or [DEFAULT_TEST_AREA]

    def predict_healing_need(self, impact: GitImpact) -> bool:
        """True when the push is risky enough that selector healing is expected."""
        return impact.risk_score > HEALING_NEED_THRESHOLD
