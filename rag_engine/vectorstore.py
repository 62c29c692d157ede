#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Векторное хранилище: SQLite как движок хранения + брутфорс-поиск по косинусу.

- SQLiteEngine: единственное соединение с движком хранения на процесс
- VectorStore: инициализация (single-flight), вставка, поиск, статистика, очистка
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from llama_index.core.schema import TextNode

from .config import VectorStoreConfig
from .embeddings import EmbeddingService
from .errors import (
    ConnectionAlreadyOpenError,
    EmbeddingDimensionError,
    StoreInitializationError,
    StoreNotInitializedError,
)
from .persistence import ChunkRecord, PersistenceStore
from .singleflight import SingleFlight

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass
class SearchResult:
    """Найденный чанк с оценкой косинусной близости к запросу."""
    id: int
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    similarity: float = 0.0


@dataclass
class StoreStats:
    total_documents: int = 0
    total_chunks: int = 0
    average_chunk_length: int = 0


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0, если длины различаются или одна из норм нулевая."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def source_of(metadata: Dict[str, Any]) -> Optional[str]:
    """Имя исходного файла из метаданных (поддерживается и старый ключ loc.source)."""
    source = metadata.get("source")
    if source:
        return source
    loc = metadata.get("loc")
    if isinstance(loc, dict):
        return loc.get("source")
    return None


class SQLiteEngine:
    """Движок хранения. Соединение открывается не более одного раза."""

    def __init__(self, database: str = ":memory:") -> None:
        self.database = database
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreNotInitializedError("Движок хранения не открыт")
        return self._conn

    def open(self) -> sqlite3.Connection:
        if self._conn is not None:
            raise ConnectionAlreadyOpenError("Соединение с движком хранения уже открыто")
        logger.info("Открытие движка хранения SQLite (%s)", self.database)
        # соединение используется только из потока цикла событий
        self._conn = sqlite3.connect(self.database, check_same_thread=False)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class VectorStore:
    """Хранилище чанков и их эмбеддингов.

    Владеет строками чанков и их долговременной копией. Поиск: полный
    перебор строк по косинусной близости, ничьи упорядочены по порядку вставки.
    """

    def __init__(
        self,
        embeddings: EmbeddingService,
        cfg: VectorStoreConfig,
        persistence: Optional[PersistenceStore] = None,
        engine: Optional[SQLiteEngine] = None,
        dimension: Optional[int] = None,
    ) -> None:
        if not _IDENTIFIER.fullmatch(cfg.table_name):
            raise ValueError(f"Недопустимое имя таблицы: {cfg.table_name!r}")
        self.embeddings = embeddings
        self.cfg = cfg
        self.persistence = persistence
        self.engine = engine or SQLiteEngine(cfg.database)
        self._configured_dimension = dimension
        self.dimension = dimension
        self._table = cfg.table_name
        self._initialized = False
        self._init_flight = SingleFlight("vector-store-init")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Идемпотентная инициализация; конкурентные вызовы ждут одну и ту же попытку."""
        if self._initialized:
            return
        timeout = self.cfg.init_wait_timeout if self._init_flight.in_flight else None
        if timeout is not None:
            logger.info("Инициализация хранилища уже идёт, ожидание до %.0f с", timeout)
        try:
            await self._init_flight.run(self._initialize, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StoreInitializationError("Таймаут ожидания инициализации хранилища") from exc

    async def _initialize(self) -> None:
        if self._initialized:
            return
        try:
            if not self.engine.is_open:
                self.engine.open()
            with self.engine.connection as conn:
                conn.execute(
                    f"CREATE TABLE IF NOT EXISTS {self._table} ("
                    " id INTEGER PRIMARY KEY AUTOINCREMENT,"
                    " vector TEXT NOT NULL,"
                    " text TEXT NOT NULL,"
                    " metadata TEXT NOT NULL DEFAULT '{}')"
                )
        except sqlite3.Error as exc:
            raise StoreInitializationError(f"Не удалось открыть движок хранения: {exc}") from exc

        # снапшот подгружается только при первой успешной инициализации
        await self._load_persisted()
        self._initialized = True
        logger.info("Хранилище инициализировано: %d чанков", self.count())

    def _connection(self) -> sqlite3.Connection:
        if not self._initialized:
            raise StoreNotInitializedError("Векторное хранилище не инициализировано")
        return self.engine.connection

    def _check_dimensions(self, vectors: Sequence[Sequence[float]]) -> None:
        if not vectors:
            return
        expected = self.dimension if self.dimension is not None else len(vectors[0])
        for i, vector in enumerate(vectors):
            if len(vector) != expected:
                raise EmbeddingDimensionError(
                    f"Вектор #{i}: размерность {len(vector)}, ожидалась {expected}"
                )
        self.dimension = expected

    def _insert(self, rows: Sequence[tuple]) -> None:
        with self.engine.connection as conn:
            conn.executemany(
                f"INSERT INTO {self._table} (vector, text, metadata) VALUES (?, ?, ?)",
                [
                    (json.dumps(list(vector)), text, json.dumps(metadata, ensure_ascii=False))
                    for vector, text, metadata in rows
                ],
            )

    def _fetch_records(self) -> List[ChunkRecord]:
        cursor = self.engine.connection.execute(
            f"SELECT id, vector, text, metadata FROM {self._table} ORDER BY id"
        )
        return [
            ChunkRecord(id=row_id, vector=json.loads(vector), text=text, metadata=json.loads(metadata or "{}"))
            for row_id, vector, text, metadata in cursor
        ]

    async def _load_persisted(self) -> None:
        if self.persistence is None:
            return
        try:
            records = await asyncio.to_thread(self.persistence.load_all)
        except Exception as exc:
            logger.warning("Не удалось загрузить снапшот из долговременного хранилища: %s", exc)
            return
        if not records:
            return

        expected = self.dimension if self.dimension is not None else len(records[0].vector)
        valid = [r for r in records if len(r.vector) == expected and expected > 0]
        if len(valid) != len(records):
            logger.warning("Пропущено %d строк снапшота с неверной размерностью", len(records) - len(valid))
        if not valid:
            return
        self.dimension = expected
        self._insert([(r.vector, r.text, r.metadata) for r in valid])
        logger.info("Загружено %d векторов из долговременного хранилища", len(valid))

    async def _persist_snapshot(self) -> None:
        if self.persistence is None:
            return
        records = self._fetch_records()
        try:
            await asyncio.to_thread(self.persistence.save_all, records)
        except Exception as exc:
            # сессия продолжает работать на данных в памяти
            logger.warning("Не удалось сохранить снапшот: %s", exc)

    def count(self) -> int:
        if not self.engine.is_open:
            return 0
        (total,) = self.engine.connection.execute(f"SELECT COUNT(*) FROM {self._table}").fetchone()
        return int(total)

    async def add_documents(self, nodes: Sequence[TextNode]) -> int:
        """Эмбеддит чанки, вставляет их одной транзакцией и сохраняет снапшот.

        Размерность проверяется до вставки: при ошибке не вставляется ни одна строка.
        """
        self._connection()
        if not nodes:
            return 0
        texts = [node.get_content() for node in nodes]
        vectors = await self.embeddings.embed_documents(texts)
        if len(vectors) != len(nodes):
            raise EmbeddingDimensionError(f"Получено {len(vectors)} векторов для {len(nodes)} чанков")
        self._check_dimensions(vectors)
        self._insert([(vector, text, dict(node.metadata)) for vector, text, node in zip(vectors, texts, nodes)])
        await self._persist_snapshot()
        return len(nodes)

    async def similarity_search(self, query: str, k: int) -> List[SearchResult]:
        """Top-k чанков по убыванию косинусной близости к запросу."""
        conn = self._connection()
        if k <= 0:
            return []
        query_vector = await self.embeddings.embed_query(query)
        results = [
            SearchResult(
                id=row_id,
                text=text,
                metadata=json.loads(metadata or "{}"),
                similarity=cosine_similarity(query_vector, json.loads(vector)),
            )
            for row_id, vector, text, metadata in conn.execute(
                f"SELECT id, vector, text, metadata FROM {self._table} ORDER BY id"
            )
        ]
        # sorted стабилен и при reverse=True: равные оценки остаются в порядке вставки
        results = sorted(results, key=lambda r: r.similarity, reverse=True)
        return results[:k]

    async def file_exists(self, name: str) -> bool:
        if not self._initialized:
            return False
        for (metadata,) in self.engine.connection.execute(f"SELECT metadata FROM {self._table} ORDER BY id"):
            try:
                if source_of(json.loads(metadata or "{}")) == name:
                    return True
            except json.JSONDecodeError:
                continue
        return False

    async def get_stats(self) -> StoreStats:
        if not self._initialized:
            return StoreStats()
        conn = self.engine.connection
        total, avg_length = conn.execute(f"SELECT COUNT(*), AVG(LENGTH(text)) FROM {self._table}").fetchone()
        sources = set()
        for (metadata,) in conn.execute(f"SELECT metadata FROM {self._table}"):
            try:
                source = source_of(json.loads(metadata or "{}"))
            except json.JSONDecodeError:
                continue
            if source:
                sources.add(source)
        return StoreStats(
            total_documents=len(sources),
            total_chunks=int(total or 0),
            # округление половины вверх, как Math.round
            average_chunk_length=int(math.floor(float(avg_length or 0) + 0.5)),
        )

    async def clear_database(self) -> None:
        """Удаляет все строки, сбрасывает счётчик id и удаляет долговременную копию."""
        if not self._initialized:
            logger.warning("Очистка пропущена: хранилище не инициализировано")
            return
        with self.engine.connection as conn:
            conn.execute(f"DELETE FROM {self._table}")
            conn.execute("DELETE FROM sqlite_sequence WHERE name = ?", (self._table,))
        self.dimension = self._configured_dimension
        logger.info("Таблица %s очищена", self._table)

        if self.persistence is not None:
            try:
                await asyncio.to_thread(self.persistence.delete_all)
            except Exception as exc:
                logger.warning("Не удалось удалить долговременную копию: %s", exc)
