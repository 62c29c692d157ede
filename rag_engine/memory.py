#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Ограниченная память диалога."""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List


@dataclass(frozen=True)
class ConversationTurn:
    role: str  # "user" | "assistant"
    content: str


class ConversationMemory:
    """FIFO-память последних max_turns реплик; старые вытесняются первыми."""

    def __init__(self, max_turns: int = 10) -> None:
        self.max_turns = max_turns
        self._turns: Deque[ConversationTurn] = deque(maxlen=max_turns)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def append(self, role: str, content: str) -> None:
        self._turns.append(ConversationTurn(role=role, content=content))

    def recent(self, n: int) -> List[ConversationTurn]:
        """Последние n реплик в хронологическом порядке."""
        if n <= 0:
            return []
        return list(self._turns)[-n:]

    def replace(self, turns: Iterable[ConversationTurn]) -> None:
        self._turns = deque(turns, maxlen=self.max_turns)

    def clear(self) -> None:
        self._turns.clear()
