"""Conversation memory shared by every assist operation."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterator, List, Optional

from .models import MODEL_ROLE, USER_ROLE, HistoryTurn

MIN_QUERY_CHARS = 50


class HistoryManager:
    """Bounded chronological log of role-tagged turns.

    ``max_messages <= 0`` keeps every turn; otherwise the oldest turns are
    dropped first once the bound is exceeded.
    """

    def __init__(self, max_messages: int = 0) -> None:
        self.max_messages = max(0, max_messages)
        self._turns: Deque[HistoryTurn] = deque(maxlen=self.max_messages or None)

    def append(self, role: str, text: Optional[str]) -> bool:
        if not text or not text.strip():
            return False
        self._turns.append(HistoryTurn(role=MODEL_ROLE if role == MODEL_ROLE else USER_ROLE, text=text))
        return True

    def clear(self) -> None:
        self._turns.clear()

    def turns(self) -> List[HistoryTurn]:
        return list(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[HistoryTurn]:
        return iter(list(self._turns))

    def build_query(self, max_chars: int) -> str:
        """Newest turns first, newline-joined, cut to ``max(50, max_chars)`` characters."""

        budget = max(MIN_QUERY_CHARS, max_chars)
        query = ""
        for turn in reversed(self._turns):
            if len(query) >= budget:
                break
            if not turn.text.strip():
                continue
            if query:
                query += "\n"
            remaining = budget - len(query)
            if remaining <= 0:
                break
            if len(turn.text) > remaining:
                query += turn.text[:remaining]
                break
            query += turn.text
        return query
