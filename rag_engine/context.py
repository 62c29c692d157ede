#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Контекст движка: единожды собранный набор компонентов на процесс."""

import asyncio
import logging
from typing import Optional

from llama_index.core.embeddings import BaseEmbedding

from .config import AppConfig
from .embeddings import EmbeddingService
from .engine import ConversationalRAG
from .errors import StoreInitializationError
from .indexer import DocumentIndexer
from .llm import GenerationBackend, OpenAICompatBackend
from .loader import ModelLoader
from .memory import ConversationMemory
from .persistence import PersistenceStore, WeaviatePersistence
from .singleflight import SingleFlight
from .synthetic import SyntheticDataGenerator
from .vectorstore import SQLiteEngine, VectorStore

logger = logging.getLogger(__name__)


class RAGContext:
    """Владеет хранилищем, загрузчиком модели, памятью и сервисами над ними.

    initialize() загружает модель эмбеддингов и открывает хранилище;
    конкурентные и повторные вызовы разделяют одну попытку.
    """

    def __init__(
        self,
        config: AppConfig,
        embeddings: EmbeddingService,
        store: VectorStore,
        loader: ModelLoader,
        memory: ConversationMemory,
    ) -> None:
        self.config = config
        self.embeddings = embeddings
        self.store = store
        self.loader = loader
        self.memory = memory
        self.engine = ConversationalRAG(
            store,
            loader,
            memory,
            llm_cfg=config.llm,
            gen_cfg=config.generation,
            ret_cfg=config.retrieval,
            mem_cfg=config.memory,
            stream_cfg=config.streaming,
        )
        self.indexer = DocumentIndexer(store, config.indexing)
        self.synthetic = SyntheticDataGenerator(loader, config.synthetic, config.llm)
        self._init_flight = SingleFlight("rag-init")

    @property
    def is_initialized(self) -> bool:
        return self.store.is_initialized

    async def initialize(self) -> None:
        if self.is_initialized:
            return
        timeout = self.config.vector_store.init_wait_timeout if self._init_flight.in_flight else None
        try:
            await self._init_flight.run(self._initialize, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StoreInitializationError("Initialization timeout") from exc

    async def _initialize(self) -> None:
        logger.info("Инициализация RAG: эмбеддинги + хранилище")
        await self.embeddings.load()
        await self.store.initialize()

    def close(self) -> None:
        self.store.engine.close()
        close = getattr(self.store.persistence, "close", None)
        if callable(close):
            try:
                close()
            except Exception as exc:
                logger.warning("Не удалось закрыть долговременное хранилище: %s", exc)


def build_context(
    cfg: Optional[AppConfig] = None,
    embed_model: Optional[BaseEmbedding] = None,
    persistence: Optional[PersistenceStore] = None,
    backend: Optional[GenerationBackend] = None,
    engine: Optional[SQLiteEngine] = None,
) -> RAGContext:
    """Собирает контекст из конфига; любой коллаборатор можно передать явно."""
    cfg = cfg or AppConfig()
    if persistence is None and cfg.vector_store.persist:
        persistence = WeaviatePersistence(cfg.vector_store)
    embeddings = EmbeddingService(cfg.embedding, embed_model=embed_model)
    store = VectorStore(
        embeddings,
        cfg.vector_store,
        persistence=persistence,
        engine=engine,
        dimension=cfg.embedding.dimension,
    )
    loader = ModelLoader(backend or OpenAICompatBackend(cfg.llm))
    memory = ConversationMemory(cfg.memory.max_turns)
    return RAGContext(cfg, embeddings, store, loader, memory)
