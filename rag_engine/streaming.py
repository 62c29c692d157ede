#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Батчинг потоковых фрагментов генерации."""

import asyncio
from typing import Callable, Optional

from .llm import strip_prompt_echo


class StreamBuffer:
    """Копит фрагменты и отдаёт их вызывающему пачками.

    Сброс происходит, когда в буфере набралось min_chars символов или
    через flush_delay секунд после первого несброшенного фрагмента, смотря
    что наступит раньше. close() сбрасывает остаток безусловно, discard()
    выбрасывает его. emitted хранит всё, что уже ушло вызывающему.
    """

    def __init__(self, emit: Callable[[str], None], min_chars: int = 20, flush_delay: float = 0.05) -> None:
        self._emit = emit
        self.min_chars = min_chars
        self.flush_delay = flush_delay
        self._buffer = ""
        self.emitted = ""
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> str:
        return self._buffer

    def append(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        if len(self._buffer) >= self.min_chars:
            self.flush()
        elif self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(self.flush_delay, self.flush)

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._buffer:
            chunk, self._buffer = self._buffer, ""
            self.emitted += chunk
            self._emit(chunk)

    def close(self) -> None:
        self.flush()

    def discard(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._buffer = ""


class ProvisionalText:
    """Превращает сырой поток модели в текст, который можно показывать сразу.

    Придерживает то, что может оказаться эхом промпта, а также пробелы в
    начале и в конце: так склейка всех выданных кусков в точности равна
    финальному ответу (эхо срезано, края обрезаны).
    """

    def __init__(self, prompt: str = "") -> None:
        self.prompt = prompt
        self.raw = ""
        self._sent = 0

    def _safe(self) -> str:
        raw = self.raw
        if self.prompt:
            if len(raw) < len(self.prompt) and self.prompt.startswith(raw):
                return ""
            if raw.startswith(self.prompt):
                raw = raw[len(self.prompt):]
        return raw.strip()

    def feed(self, fragment: str) -> str:
        """Добавляет фрагмент и возвращает новую безопасную для показа часть."""
        self.raw += fragment
        safe = self._safe()
        new = safe[self._sent:]
        self._sent = len(safe)
        return new

    def finish(self) -> str:
        """Остаток текста после окончания генерации."""
        final = self.text
        rest = final[self._sent:]
        self._sent = len(final)
        return rest

    @property
    def text(self) -> str:
        return strip_prompt_echo(self.raw, self.prompt)
