#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Долговременное хранилище снапшота чанков в Weaviate (embedded или remote).

Контракт: save_all(rows), load_all() -> rows, delete_all(). Хранилище
best-effort: вызывающая сторона логирует ошибки и не пробрасывает их.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlparse

import weaviate
from weaviate.classes.config import Configure, DataType, Property
from weaviate.classes.data import DataObject
from weaviate.classes.init import Auth

from .config import VectorStoreConfig

logger = logging.getLogger(__name__)


@dataclass
class ChunkRecord:
    """Строка хранилища: id, вектор, текст и метаданные чанка."""
    id: int
    vector: List[float]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class PersistenceStore(Protocol):
    def save_all(self, rows: List[ChunkRecord]) -> None: ...

    def load_all(self) -> List[ChunkRecord]: ...

    def delete_all(self) -> None: ...


def make_weaviate_client(cfg: VectorStoreConfig) -> weaviate.WeaviateClient:
    """Создаёт подключённый клиент Weaviate в зависимости от конфигурации.

    - embedded: локальный встроенный сервер Weaviate (без внешних сервисов)
    - remote: подключение к удалённому Weaviate (Docker/K8s) по URL, опционально с API‑ключом
    """
    if cfg.use_embedded:
        return weaviate.connect_to_embedded()
    if not cfg.weaviate_url:
        raise RuntimeError("Remote Weaviate запрошен, но URL не указан.")

    url = urlparse(cfg.weaviate_url)
    secure = url.scheme == "https"
    auth = Auth.api_key(cfg.weaviate_api_key) if cfg.weaviate_api_key else None
    return weaviate.connect_to_custom(
        http_host=url.hostname or "localhost",
        http_port=url.port or (443 if secure else 8080),
        http_secure=secure,
        grpc_host=url.hostname or "localhost",
        grpc_port=cfg.weaviate_grpc_port,
        grpc_secure=secure,
        auth_credentials=auth,
    )


class WeaviatePersistence:
    """Снапшот всех строк хранилища в одной коллекции Weaviate.

    save_all пересоздаёт коллекцию целиком; векторы передаются явно
    (векторизатор коллекции отключён). Клиент создаётся лениво при первом обращении.
    """

    def __init__(self, cfg: VectorStoreConfig, client: Optional[weaviate.WeaviateClient] = None) -> None:
        self.cfg = cfg
        self._client = client

    @property
    def client(self) -> weaviate.WeaviateClient:
        if self._client is None:
            self._client = make_weaviate_client(self.cfg)
        return self._client

    def _create_collection(self):
        return self.client.collections.create(
            self.cfg.index_name,
            vectorizer_config=Configure.Vectorizer.none(),
            properties=[
                Property(name="row_id", data_type=DataType.INT),
                Property(name="text", data_type=DataType.TEXT),
                Property(name="metadata", data_type=DataType.TEXT),
            ],
        )

    def save_all(self, rows: List[ChunkRecord]) -> None:
        self.delete_all()
        collection = self._create_collection()
        if not rows:
            return
        objects = [
            DataObject(
                properties={
                    "row_id": row.id,
                    "text": row.text,
                    "metadata": json.dumps(row.metadata, ensure_ascii=False),
                },
                vector=row.vector,
            )
            for row in rows
        ]
        result = collection.data.insert_many(objects)
        if result.has_errors:
            raise RuntimeError(f"Weaviate отклонил {len(result.errors)} объектов из {len(objects)}")
        logger.debug("Снапшот сохранён в %s: %d строк", self.cfg.index_name, len(rows))

    def load_all(self) -> List[ChunkRecord]:
        if not self.client.collections.exists(self.cfg.index_name):
            return []
        collection = self.client.collections.get(self.cfg.index_name)
        rows: List[ChunkRecord] = []
        for obj in collection.iterator(include_vector=True):
            vector = obj.vector
            # коллекции с named vectors отдают словарь {"default": [...]}
            if isinstance(vector, dict):
                vector = vector.get("default") or next(iter(vector.values()), [])
            props = obj.properties
            rows.append(
                ChunkRecord(
                    id=int(props.get("row_id") or 0),
                    vector=[float(x) for x in vector or []],
                    text=str(props.get("text") or ""),
                    metadata=json.loads(props.get("metadata") or "{}"),
                )
            )
        rows.sort(key=lambda r: r.id)
        return rows

    def delete_all(self) -> None:
        if self.client.collections.exists(self.cfg.index_name):
            self.client.collections.delete(self.cfg.index_name)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
