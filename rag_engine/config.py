#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass
class EmbeddingConfig:
    """Параметры модели эмбеддингов.

    - model_name: имя модели HuggingFace для векторизации текста
    - embed_batch_size: размер батча при построении эмбеддингов
    - dimension: ожидаемая размерность векторов (None: берётся из первого вектора)
    """
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    embed_batch_size: int = 32
    dimension: Optional[int] = 384


@dataclass
class VectorStoreConfig:
    """Параметры векторного хранилища.

    - table_name: имя таблицы чанков в движке хранения (SQLite)
    - database: путь SQLite, по умолчанию in-memory
    - init_wait_timeout: сколько ждать чужую инициализацию, сек
    - persist: сохранять ли снапшот в долговременное хранилище (Weaviate)
    - index_name: имя коллекции в Weaviate
    - use_embedded: использовать ли встроенный (embedded) Weaviate
    - weaviate_url: URL удалённого Weaviate (если используется)
    - weaviate_api_key: API-ключ для удалённого Weaviate (опционально)
    - weaviate_grpc_port: gRPC-порт удалённого Weaviate
    """
    table_name: str = "vectors"
    database: str = ":memory:"
    init_wait_timeout: float = 10.0
    persist: bool = True
    index_name: str = "LocalRAGVectors"
    use_embedded: bool = True
    weaviate_url: Optional[str] = None
    weaviate_api_key: Optional[str] = None
    weaviate_grpc_port: int = 50051


@dataclass
class LLMConfig:
    """Параметры языковой модели (OpenAI-совместимый сервер).

    - base_url: базовый URL сервиса LLM
    - api_key: ключ доступа
    - model_name: имя модели
    - request_timeout: таймаут HTTP-запроса к серверу, сек
    - load_timeout: сколько запрос ждёт загрузку модели до fallback, сек
    """
    base_url: str = "http://localhost:8080/v1"
    api_key: str = "test"
    model_name: str = "HuggingFaceTB/SmolLM2-360M-Instruct"
    request_timeout: float = 120.0
    load_timeout: float = 60.0


@dataclass
class GenerationConfig:
    """Параметры генерации ответа на вопрос.

    Консервативные значения: низкая температура, штраф за повторы и
    явные стоп-последовательности ограничивают галлюцинации и длину.
    """
    temperature: float = 0.1
    top_p: float = 0.9
    repetition_penalty: float = 1.2
    max_tokens: int = 256
    stop: Tuple[str, ...] = ("<|im_end|>", "Question:", "User question:", "Context:")

    def as_kwargs(self) -> dict:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "repetition_penalty": self.repetition_penalty,
            "max_tokens": self.max_tokens,
            "stop": list(self.stop),
        }


@dataclass
class SyntheticConfig:
    """Параметры генерации синтетических обучающих примеров."""
    num_examples: int = 5
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 512

    def as_kwargs(self) -> dict:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }


@dataclass
class IndexingConfig:
    """Параметры индексирования корпуса документов.

    - chunk_size: размер текстового чанка в символах
    - chunk_overlap: перекрытие соседних чанков
    - min_chunk_size / max_chunk_size: допустимый диапазон chunk_size
    - max_overlap_ratio: максимальная доля перекрытия от chunk_size
    """
    chunk_size: int = 500
    chunk_overlap: int = 50
    min_chunk_size: int = 100
    max_chunk_size: int = 2000
    max_overlap_ratio: float = 0.5


@dataclass
class RetrievalConfig:
    """Параметры извлечения: сколько чанков идёт в контекст."""
    similarity_top_k: int = 3


@dataclass
class MemoryConfig:
    """Память диалога: сколько реплик хранить и сколько класть в промпт."""
    max_turns: int = 10
    prompt_turns: int = 6


@dataclass
class StreamingConfig:
    """Батчинг стрима: сброс по размеру буфера или по таймеру простоя."""
    min_chunk_chars: int = 20
    flush_delay: float = 0.05


@dataclass
class ClientConfig:
    """Ограничения ожидания на стороне вызывающего (ядро их не отменяет)."""
    ready_timeout: float = 5.0
    init_attempts: int = 3
    init_retry_delay: float = 1.0
    init_timeout: float = 30.0
    model_timeout: float = 300.0
    index_timeout: float = 30.0
    query_timeout: float = 60.0
    synthetic_timeout: float = 60.0
    default_timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    return value if value not in (None, "") else default


@dataclass
class AppConfig:
    """Сводная конфигурация приложения."""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    synthetic: SyntheticConfig = field(default_factory=SyntheticConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Собирает конфиг из переменных окружения RAG_*; остальное по умолчанию."""
        cfg = cls()
        cfg.embedding.model_name = _env("RAG_EMBEDDING_MODEL", cfg.embedding.model_name)
        dim = _env("RAG_EMBEDDING_DIM")
        if dim is not None:
            cfg.embedding.dimension = int(dim) or None

        cfg.vector_store.database = _env("RAG_SQLITE_PATH", cfg.vector_store.database)
        cfg.vector_store.persist = _env("RAG_PERSIST", "1") != "0"
        cfg.vector_store.index_name = _env("RAG_WEAVIATE_INDEX", cfg.vector_store.index_name)
        cfg.vector_store.weaviate_url = _env("RAG_WEAVIATE_URL")
        cfg.vector_store.weaviate_api_key = _env("RAG_WEAVIATE_API_KEY")
        cfg.vector_store.use_embedded = cfg.vector_store.weaviate_url is None

        cfg.llm.base_url = _env("RAG_LLM_BASE_URL", cfg.llm.base_url)
        cfg.llm.api_key = _env("RAG_LLM_API_KEY", cfg.llm.api_key)
        cfg.llm.model_name = _env("RAG_LLM_MODEL", cfg.llm.model_name)
        load_timeout = _env("RAG_LLM_LOAD_TIMEOUT")
        if load_timeout is not None:
            cfg.llm.load_timeout = float(load_timeout)
        return cfg
