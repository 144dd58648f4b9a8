"""Tests for the TF-IDF and embedding indexes."""

from __future__ import annotations

import pytest

from live_assist.index import EmbeddingIndex, LexicalIndex, inverse_document_frequency


class TestInverseDocumentFrequency:
    def test_rarer_terms_weigh_more(self):
        weights = [inverse_document_frequency(df, 10) for df in range(1, 11)]
        assert weights == sorted(weights, reverse=True)
        assert weights[-1] == pytest.approx(1.0)

    def test_built_table_matches_formula(self):
        index = LexicalIndex.build([("a.txt", "alpha beta"), ("b.txt", "alpha gamma")])
        assert index.idf["alpha"] < index.idf["beta"]
        assert index.idf["beta"] == pytest.approx(inverse_document_frequency(1, 2))


class TestLexicalSearch:
    def test_identical_text_scores_one(self):
        index = LexicalIndex.build([("a.txt", "rate limiting")])

        hits = index.search("rate limiting", top_k=4, min_score=0.0)

        assert len(hits) == 1
        assert hits[0].score == pytest.approx(1.0)

    def test_min_score_filters_hits(self):
        index = LexicalIndex.build([("a.txt", "The system uses a token bucket for rate limiting.")])

        assert index.search("rate limiting", top_k=4, min_score=0.08)
        assert index.search("rate limiting", top_k=4, min_score=0.6) == []

    def test_unseen_terms_are_ignored(self):
        index = LexicalIndex.build([("a.txt", "rate limiting")])

        assert index.search("zebra", top_k=4, min_score=0.0) == []
        with_noise = index.search("rate limiting zebra", top_k=4, min_score=0.0)
        assert with_noise[0].score == pytest.approx(1.0)

    def test_ties_keep_chunk_order(self):
        index = LexicalIndex.build([("b.txt", "alpha beta"), ("a.txt", "alpha beta"), ("c.txt", "alpha")])

        hits = index.search("alpha beta", top_k=4, min_score=0.0)

        assert [hit.source for hit in hits[:2]] == ["b.txt", "a.txt"]
        assert hits[0].score == pytest.approx(hits[1].score)
        assert hits[2].source == "c.txt"

    def test_top_k_limits_results(self):
        index = LexicalIndex.build([(f"{n}.txt", "shared words here") for n in range(6)])

        assert len(index.search("shared", top_k=3, min_score=0.0)) == 3
        assert index.search("shared", top_k=0, min_score=0.0) == []

    def test_empty_index(self):
        index = LexicalIndex([], {})
        assert len(index) == 0
        assert index.search("anything", top_k=4, min_score=0.0) == []

    def test_chunks_without_tokens_are_skipped(self):
        index = LexicalIndex.build([("a.txt", "! ? ."), ("b.txt", "real words")])
        assert [chunk.source for chunk in index.chunks] == ["b.txt"]


class TestEmbeddingIndex:
    def test_orders_by_cosine(self):
        index = EmbeddingIndex.from_vectors(
            [("a.txt", "apples"), ("b.txt", "rockets"), ("c.txt", "fruit")],
            [[1.0, 0.0], [0.0, 2.0], [0.8, 0.6]],
        )

        hits = index.search([3.0, 0.0], top_k=3, min_score=0.0)

        assert [hit.source for hit in hits] == ["a.txt", "c.txt", "b.txt"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[1].score == pytest.approx(0.8)

    def test_threshold_and_top_k(self):
        index = EmbeddingIndex.from_vectors([("a.txt", "x"), ("b.txt", "y")], [[1.0, 0.0], [0.0, 1.0]])

        assert [hit.source for hit in index.search([1.0, 0.0], top_k=4, min_score=0.5)] == ["a.txt"]
        assert index.search([1.0, 0.0], top_k=0, min_score=0.0) == []

    def test_empty_index(self):
        index = EmbeddingIndex.from_vectors([], [])
        assert len(index) == 0
        assert index.search([1.0], top_k=4, min_score=0.0) == []
