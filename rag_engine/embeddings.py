#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Сервис эмбеддингов поверх llama-index BaseEmbedding."""

import asyncio
import logging
from typing import List, Optional

from llama_index.core.embeddings import BaseEmbedding

from .config import EmbeddingConfig

logger = logging.getLogger(__name__)


def make_embed_model(cfg: EmbeddingConfig) -> BaseEmbedding:
    """Создаёт HuggingFace-модель эмбеддингов (загрузка весов блокирующая)."""
    from llama_index.embeddings.huggingface import HuggingFaceEmbedding

    return HuggingFaceEmbedding(model_name=cfg.model_name, embed_batch_size=cfg.embed_batch_size)


class EmbeddingService:
    """Чистая функция text -> vector для ядра.

    Модель загружается лениво в load(); вычисления выполняются в потоке,
    чтобы не блокировать цикл событий.
    """

    def __init__(self, cfg: EmbeddingConfig, embed_model: Optional[BaseEmbedding] = None) -> None:
        self.cfg = cfg
        self._model = embed_model

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    async def load(self) -> None:
        if self._model is not None:
            return
        logger.info("Загрузка модели эмбеддингов %s", self.cfg.model_name)
        self._model = await asyncio.to_thread(make_embed_model, self.cfg)

    def _require_model(self) -> BaseEmbedding:
        if self._model is None:
            raise RuntimeError("Модель эмбеддингов не загружена")
        return self._model

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        model = self._require_model()
        vectors = await asyncio.to_thread(model.get_text_embedding_batch, texts)
        return [list(map(float, v)) for v in vectors]

    async def embed_query(self, text: str) -> List[float]:
        model = self._require_model()
        vector = await asyncio.to_thread(model.get_query_embedding, text)
        return list(map(float, vector))
