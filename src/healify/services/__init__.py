"""
Services module for selector healing and test run orchestration.
"""

from .dom_analyzer import DOMAnalyzer, ElementNode, ElementTree
from .selector_parser import SelectorParser, SelectorPredicate, parse_selector
from .similarity_scorer import SimilarityScorer
from .healing_policy import HealingPolicy, SelectorSynthesizer, transition
from .healing_engine import HealingEngine
from .healing_orchestrator import ReportAck, TestRunOrchestrator, summarize_events
from .fragility_analyzer import FragilityAnalyzer
from .selector_analyzer import AnalyzedSelector, SelectorAnalyzer
from .git_impact_analyzer import GitImpact, GitImpactAnalyzer

__all__ = [
    "DOMAnalyzer",
    "ElementNode",
    "ElementTree",
    "SelectorParser",
    "SelectorPredicate",
    "parse_selector",
    "SimilarityScorer",
    "HealingPolicy",
    "SelectorSynthesizer",
    "transition",
    "HealingEngine",
    "ReportAck",
    "TestRunOrchestrator",
    "summarize_events",
    "FragilityAnalyzer",
    "AnalyzedSelector",
    "SelectorAnalyzer",
    "GitImpact",
    "GitImpactAnalyzer",
]
