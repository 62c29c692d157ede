"""
Тесты батчинга стрима и предварительного текста ответа.

Запуск тестов:
  pytest -q tests/test_streaming.py
"""

import asyncio
from typing import List

import pytest

from rag_engine.streaming import ProvisionalText, StreamBuffer


@pytest.mark.asyncio
async def test_buffer_flushes_by_size() -> None:
    chunks: List[str] = []
    buffer = StreamBuffer(chunks.append, min_chars=20, flush_delay=10.0)

    buffer.append("0123456789")
    assert chunks == []
    buffer.append("0123456789ab")

    assert chunks == ["01234567890123456789ab"]
    assert buffer.pending == ""


@pytest.mark.asyncio
async def test_buffer_flushes_by_timer() -> None:
    chunks: List[str] = []
    buffer = StreamBuffer(chunks.append, min_chars=20, flush_delay=0.02)

    buffer.append("Hi")
    buffer.append(" there")
    await asyncio.sleep(0.1)

    assert chunks == ["Hi there"]


@pytest.mark.asyncio
async def test_buffer_close_flushes_remainder() -> None:
    chunks: List[str] = []
    buffer = StreamBuffer(chunks.append, min_chars=20, flush_delay=10.0)

    buffer.append("tail")
    buffer.close()
    buffer.close()

    assert chunks == ["tail"]


@pytest.mark.asyncio
async def test_buffer_discard_drops_pending_and_timer() -> None:
    chunks: List[str] = []
    buffer = StreamBuffer(chunks.append, min_chars=5, flush_delay=0.02)

    buffer.append("sent!")
    buffer.append("held")
    buffer.discard()
    await asyncio.sleep(0.1)

    assert chunks == ["sent!"]
    assert buffer.emitted == "sent!"
    assert buffer.pending == ""


def test_provisional_text_holds_back_prompt_echo() -> None:
    prompt = "<|im_start|>user\nQ<|im_end|>\n<|im_start|>assistant\n"
    text = ProvisionalText(prompt)
    emitted = []

    for i in range(0, len(prompt), 5):
        emitted.append(text.feed(prompt[i:i + 5]))
    assert "".join(emitted) == ""

    for fragment in ["  The ", "answer", " is 42.", "\n"]:
        emitted.append(text.feed(fragment))
    emitted.append(text.finish())

    assert "".join(emitted) == text.text == "The answer is 42."


def test_provisional_text_without_echo() -> None:
    text = ProvisionalText("PROMPT")
    emitted = [text.feed("Hello"), text.feed(" world "), text.finish()]

    assert "".join(emitted) == "Hello world"
    assert text.text == "Hello world"
