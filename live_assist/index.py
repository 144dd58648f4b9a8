"""In-memory retrieval indexes: sparse TF-IDF and dense embeddings."""

from __future__ import annotations

from collections import Counter
from math import log, sqrt
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np

from .models import Chunk, EmbeddedChunk, ScoredChunk
from .preprocessor import tokenize


def inverse_document_frequency(document_frequency: int, total_chunks: int) -> float:
    """Smoothed idf: ``ln((N + 1) / (df + 1)) + 1``."""

    return log((total_chunks + 1.0) / (document_frequency + 1.0)) + 1.0


def weigh(term_counts: Mapping[str, int], idf: Mapping[str, float]) -> Tuple[Dict[str, float], float]:
    """Weight counts by idf, dropping terms absent from the table; return vector and L2 norm."""

    vector = {term: count * idf[term] for term, count in term_counts.items() if term in idf}
    norm = sqrt(sum(value * value for value in vector.values()))
    return vector, norm


def sparse_dot(vec_a: Mapping[str, float], vec_b: Mapping[str, float]) -> float:
    if len(vec_a) > len(vec_b):
        vec_a, vec_b = vec_b, vec_a
    return sum(value * vec_b.get(term, 0.0) for term, value in vec_a.items())


class LexicalIndexBuilder:
    """Accumulates chunk term counts and corpus document frequencies."""

    def __init__(self) -> None:
        self._pending: List[Tuple[str, str, Counter]] = []
        self._document_frequency: Counter = Counter()

    def add(self, source: str, text: str) -> bool:
        counts = Counter(tokenize(text))
        if not counts:
            return False
        self._pending.append((source, text, counts))
        self._document_frequency.update(counts.keys())
        return True

    def __len__(self) -> int:
        return len(self._pending)

    def build(self) -> "LexicalIndex":
        total = len(self._pending)
        idf = {
            term: inverse_document_frequency(freq, total) for term, freq in self._document_frequency.items()
        }
        chunks = []
        for source, text, counts in self._pending:
            vector, norm = weigh(counts, idf)
            chunks.append(Chunk(source=source, text=text, term_counts=dict(counts), vector=vector, norm=norm))
        return LexicalIndex(chunks, idf)


class LexicalIndex:
    """Immutable TF-IDF index serving top-k cosine queries."""

    def __init__(self, chunks: Sequence[Chunk], idf: Mapping[str, float]) -> None:
        self.chunks: Tuple[Chunk, ...] = tuple(chunks)
        self.idf: Dict[str, float] = dict(idf)

    @classmethod
    def build(cls, documents: Iterable[Tuple[str, str]]) -> "LexicalIndex":
        builder = LexicalIndexBuilder()
        for source, text in documents:
            builder.add(source, text)
        return builder.build()

    def __len__(self) -> int:
        return len(self.chunks)

    def query_vector(self, query: str) -> Tuple[Dict[str, float], float]:
        return weigh(Counter(tokenize(query)), self.idf)

    def search(self, query: str, *, top_k: int, min_score: float) -> List[ScoredChunk]:
        query_vec, query_norm = self.query_vector(query)
        if not query_vec or query_norm <= 0:
            return []
        scored: List[ScoredChunk] = []
        for chunk in self.chunks:
            if chunk.norm <= 0:
                continue
            score = sparse_dot(query_vec, chunk.vector) / (query_norm * chunk.norm)
            if score >= min_score:
                scored.append(ScoredChunk(source=chunk.source, text=chunk.text, score=score))
        # sorted() is stable, so equal scores keep chunk order
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[: max(0, top_k)]


def normalize(vector: Sequence[float]) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(array))
    if norm <= 0:
        return array
    return array / norm


class EmbeddingIndex:
    """Dense index over L2-normalised embedding rows."""

    def __init__(self, chunks: Sequence[EmbeddedChunk], matrix: np.ndarray) -> None:
        self.chunks: Tuple[EmbeddedChunk, ...] = tuple(chunks)
        self.matrix = matrix

    @classmethod
    def from_vectors(cls, items: Sequence[Tuple[str, str]], vectors: Sequence[Sequence[float]]) -> "EmbeddingIndex":
        if not items:
            return cls([], np.zeros((0, 0), dtype=np.float32))
        width = min(len(vector) for vector in vectors)
        rows = [normalize(vector)[:width] for vector in vectors]
        chunks = [EmbeddedChunk(source=source, text=text, row=row) for row, (source, text) in enumerate(items)]
        return cls(chunks, np.vstack(rows))

    def __len__(self) -> int:
        return len(self.chunks)

    def search(self, query_vector: Sequence[float], *, top_k: int, min_score: float) -> List[ScoredChunk]:
        if not self.chunks or top_k <= 0:
            return []
        query = normalize(query_vector)
        width = min(query.shape[0], self.matrix.shape[1])
        if width == 0:
            return []
        scores = self.matrix[:, :width] @ query[:width]
        order = np.argsort(-scores, kind="stable")
        hits: List[ScoredChunk] = []
        for row in order:
            score = float(scores[row])
            if score < min_score:
                break
            chunk = self.chunks[int(row)]
            hits.append(ScoredChunk(source=chunk.source, text=chunk.text, score=score))
            if len(hits) >= top_k:
                break
        return hits
