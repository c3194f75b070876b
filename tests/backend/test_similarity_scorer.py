"""Unit tests for candidate scoring."""

import pytest

from healify.core.models import ElementHistory
from healify.services.dom_analyzer import DOMAnalyzer
from healify.services.selector_parser import parse_selector
from healify.services.similarity_scorer import SimilarityScorer, levenshtein_distance


class TestLevenshtein:
    """Edit distance helper."""

    def test_strings(self):
        assert levenshtein_distance("kitten", "sitting") == 3
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_distance("same", "same") == 0

    def test_sequences(self):
        assert levenshtein_distance(["a", "b", "c"], ["a", "c"]) == 1


class TestSimilarityScorer:
    """Test cases for SimilarityScorer."""

    def setup_method(self):
        self.scorer = SimilarityScorer()
        self.analyzer = DOMAnalyzer()

    def test_active_weights_are_rescaled(self):
        """Only constrained terms take part and their weights sum to 1."""
        weights = self.scorer.active_weights(parse_selector("button.btn-primary"))

        assert set(weights) == {"tag", "classes"}
        assert weights["tag"] == pytest.approx(0.15 / 0.35)
        assert weights["classes"] == pytest.approx(0.20 / 0.35)
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_structure_term_requires_history(self):
        predicate = parse_selector("#login")
        assert "structure" not in self.scorer.active_weights(predicate)
        history = ElementHistory(last_known_path="html[0]/body[1]/button[0]")
        assert "structure" in self.scorer.active_weights(predicate, history)

    def test_id_matches_test_id_attribute(self, login_page):
        """An id selector is compared against test-id attributes too."""
        tree = self.analyzer.parse(login_page)
        candidates = self.scorer.match(tree, parse_selector("#login-btn"))

        top = candidates[0]
        assert top.element_id == "btn-login-new"
        assert top.score == 1.0
        assert top.breakdown.terms == {"id": 1.0}

    def test_class_jaccard(self):
        tree = self.analyzer.parse('<div class="card"></div><div class="card featured"></div>')
        candidates = self.scorer.match(tree, parse_selector(".card.featured"))

        assert [c.score for c in candidates] == [1.0, 0.5]
        assert candidates[0].document_index == 1

    def test_attribute_fraction(self):
        tree = self.analyzer.parse('<input name="email" type="password">')
        candidates = self.scorer.match(tree, parse_selector('input[name="email"][type="text"]'))

        assert len(candidates) == 1
        assert candidates[0].breakdown.terms["attributes"] == 0.5
        assert candidates[0].score == pytest.approx((0.15 + 0.25 * 0.5) / 0.40, abs=1e-6)

    def test_text_equality_ignores_case(self):
        tree = self.analyzer.parse("<button>Sign In</button>")
        candidates = self.scorer.match(tree, parse_selector('button:text-is("Sign in")'))
        assert candidates[0].score == 1.0

    def test_structure_prefers_last_known_position(self):
        html = '<div><p class="x"></p><section><p class="x"></p></section></div>'
        tree = self.analyzer.parse(html)
        history = ElementHistory(last_known_path="div[0]/section[1]/p[0]")

        candidates = self.scorer.match(tree, parse_selector(".x"), history)

        assert candidates[0].path == "div[0]/section[1]/p[0]"
        assert candidates[0].breakdown.terms["structure"] == 1.0
        assert candidates[1].breakdown.terms["structure"] == pytest.approx(2 / 3)

    def test_equal_scores_keep_document_order(self):
        tree = self.analyzer.parse('<span class="x">a</span><span class="x">b</span>')
        candidates = self.scorer.match(tree, parse_selector(".x"))

        assert [c.text for c in candidates] == ["a", "b"]
        assert candidates[0].score == candidates[1].score

    def test_equal_scores_prefer_last_known_depth(self):
        """Depth distance to the remembered position breaks ties before document order."""
        tree = self.analyzer.parse('<p class="x">a</p><div><p class="x">b</p></div>')
        history = ElementHistory(last_known_path="main[0]/p[0]")

        candidates = self.scorer.match(tree, parse_selector(".x"), history)

        assert [(c.text, c.depth) for c in candidates] == [("b", 1), ("a", 0)]
        assert candidates[0].score == candidates[1].score
        assert candidates[0].document_index > candidates[1].document_index

    def test_no_similar_element_yields_no_candidates(self):
        tree = self.analyzer.parse('<section><p class="intro">Hello</p></section>')
        assert self.scorer.match(tree, parse_selector(".card.featured")) == []

    def test_non_candidate_tags_are_skipped(self, login_page):
        tree = self.analyzer.parse(login_page)
        candidates = self.scorer.match(tree, parse_selector('title:has-text("Shop")'))
        assert all(c.tag != "title" for c in candidates)

    def test_floor_and_limit(self, login_page):
        tree = self.analyzer.parse(login_page)
        predicate = parse_selector("#login-btn")

        everything = self.scorer.match(tree, predicate)
        limited = self.scorer.match(tree, predicate, limit=2)
        floored = self.scorer.match(tree, predicate, floor=0.99)

        assert limited == everything[:2]
        assert [c.score for c in floored] == [1.0]

    def test_ranking_is_deterministic(self, login_page):
        """Identical inputs always produce an identical ordered list."""
        tree = self.analyzer.parse(login_page)
        predicate = parse_selector("button.btn-primary")

        first = self.scorer.match(tree, predicate)
        second = SimilarityScorer().match(self.analyzer.parse(login_page), predicate)

        assert [c.to_dict() for c in first] == [c.to_dict() for c in second]

    def test_scores_are_bounded(self, login_page):
        tree = self.analyzer.parse(login_page)
        for selector in ["#username", "input.form-control", "a:has-text('Cart')", "//form[@id='login']"]:
            for candidate in self.scorer.match(tree, parse_selector(selector)):
                assert 0.0 < candidate.score <= 1.0
                for value in candidate.breakdown.terms.values():
                    assert 0.0 <= value <= 1.0
