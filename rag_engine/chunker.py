#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Нарезка текста на перекрывающиеся окна фиксированного размера."""

from typing import List, Optional

from llama_index.core.schema import TextNode

from .config import IndexingConfig


def validate_chunk_params(chunk_size: int, chunk_overlap: int, cfg: Optional[IndexingConfig] = None) -> None:
    """Проверяет chunk_size (в диапазоне конфига) и chunk_overlap (0..50% от chunk_size)."""
    cfg = cfg or IndexingConfig()
    if not cfg.min_chunk_size <= chunk_size <= cfg.max_chunk_size:
        raise ValueError(
            f"chunk_size должен быть в диапазоне {cfg.min_chunk_size}..{cfg.max_chunk_size}, получено {chunk_size}"
        )
    max_overlap = int(chunk_size * cfg.max_overlap_ratio)
    if not 0 <= chunk_overlap <= max_overlap:
        raise ValueError(f"chunk_overlap должен быть в диапазоне 0..{max_overlap}, получено {chunk_overlap}")


def split_windows(text: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    """Режет текст на окна длиной chunk_size с шагом chunk_size - chunk_overlap.

    Последнее (неполное) окно включается; нарезка останавливается, как только
    окно дошло до конца текста. Пример для 1000 символов, 500/50:
    [0, 500), [450, 950), [900, 1000).
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size должен быть положительным")
    stride = chunk_size - chunk_overlap
    if stride <= 0:
        raise ValueError("chunk_overlap должен быть меньше chunk_size")

    windows: List[str] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + chunk_size, length)
        windows.append(text[start:end])
        if end >= length:
            break
        start += stride
    return windows


class TextChunker:
    """Превращает документ в список TextNode с метаданными source."""

    def __init__(self, chunk_size: int, chunk_overlap: int, cfg: Optional[IndexingConfig] = None) -> None:
        validate_chunk_params(chunk_size, chunk_overlap, cfg)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def split(self, text: str, source: str) -> List[TextNode]:
        return [
            TextNode(text=window, metadata={"source": source})
            for window in split_windows(text, self.chunk_size, self.chunk_overlap)
        ]
