"""
Общие фикстуры тестов: лёгкие заглушки вместо HF-эмбеддингов, Weaviate и LLM-сервера.

- _KeywordEmbedding: детерминированный эмбеддинг по счётчикам ключевых слов
- _MemoryPersistence: долговременное хранилище в памяти (можно «сломать»)
- _DummyLLM: потоковая генерация заранее заданного текста
- _DummyBackend: загрузчик модели со счётчиком загрузок, задержкой и ошибкой
"""

import time
from typing import Any, Callable, ClassVar, Dict, List, Optional

import pytest
from llama_index.core.embeddings import BaseEmbedding
from llama_index.core.llms import CompletionResponse

from rag_engine.config import AppConfig
from rag_engine.context import RAGContext, build_context
from rag_engine.errors import GenerationUnavailableError
from rag_engine.llm import chatml_messages_to_prompt
from rag_engine.persistence import ChunkRecord


class _KeywordEmbedding(BaseEmbedding):
    """Вектор = число вхождений каждого ключевого слова в текст."""

    KEYWORDS: ClassVar[List[str]] = ["paris", "france", "python", "snake", "rag", "retrieval", "weather", "rain"]

    @classmethod
    def class_name(cls) -> str:
        return "KeywordEmbedding"

    def _vector(self, text: str) -> List[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in self.KEYWORDS]

    def _get_query_embedding(self, query: str) -> List[float]:
        return self._vector(query)

    def _get_text_embedding(self, text: str) -> List[float]:
        return self._vector(text)

    async def _aget_query_embedding(self, query: str) -> List[float]:
        return self._vector(query)


class _MemoryPersistence:
    def __init__(self, rows: Optional[List[ChunkRecord]] = None) -> None:
        self.rows: List[ChunkRecord] = list(rows or [])
        self.fail = False
        self.saves = 0

    def save_all(self, rows: List[ChunkRecord]) -> None:
        if self.fail:
            raise RuntimeError("persistence is down")
        self.saves += 1
        self.rows = list(rows)

    def load_all(self) -> List[ChunkRecord]:
        if self.fail:
            raise RuntimeError("persistence is down")
        return list(self.rows)

    def delete_all(self) -> None:
        if self.fail:
            raise RuntimeError("persistence is down")
        self.rows = []


class _DummyLLM:
    """Отдаёт текст фрагментами; запоминает промпты и параметры вызовов."""

    def __init__(self, text: str = "Paris is the capital of France.", fragment: int = 4) -> None:
        self.text = text
        self.fragment = fragment
        self.echo_prompt = False
        self.fail_after: Optional[int] = None
        self.prompts: List[str] = []
        self.calls: List[Dict[str, Any]] = []

    def messages_to_prompt(self, messages) -> str:
        return chatml_messages_to_prompt(messages)

    def _output(self, prompt: str) -> str:
        return (prompt if self.echo_prompt else "") + self.text

    async def astream_complete(self, prompt: str, formatted: bool = False, **kwargs: Any):
        self.prompts.append(prompt)
        self.calls.append(kwargs)
        output = self._output(prompt)

        async def gen():
            text = ""
            for i, start in enumerate(range(0, len(output), self.fragment)):
                if self.fail_after is not None and i >= self.fail_after:
                    raise RuntimeError("stream broken")
                delta = output[start:start + self.fragment]
                text += delta
                yield CompletionResponse(text=text, delta=delta)

        return gen()

    async def acomplete(self, prompt: str, formatted: bool = False, **kwargs: Any) -> CompletionResponse:
        self.prompts.append(prompt)
        self.calls.append(kwargs)
        return CompletionResponse(text=self._output(prompt))


class _DummyBackend:
    """Загрузка выполняется в потоке: sleep + отчёты прогресса во всех формах."""

    def __init__(self, llm: Optional[_DummyLLM] = None, delay: float = 0.0) -> None:
        self.llm = llm or _DummyLLM()
        self.delay = delay
        self.fail = False
        self.loads = 0

    def load(self, progress_callback: Callable[[Any], None]) -> _DummyLLM:
        self.loads += 1
        progress_callback(0.0)
        progress_callback("[1/4]: 25%")
        time.sleep(self.delay)
        progress_callback({"loaded": 3, "total": 4})
        if self.fail:
            raise GenerationUnavailableError("model server is down")
        return self.llm


def make_config() -> AppConfig:
    cfg = AppConfig()
    cfg.embedding.dimension = None
    cfg.vector_store.persist = False
    cfg.llm.load_timeout = 2.0
    cfg.streaming.flush_delay = 0.01
    return cfg


@pytest.fixture
def config() -> AppConfig:
    return make_config()


@pytest.fixture
def persistence() -> _MemoryPersistence:
    return _MemoryPersistence()


@pytest.fixture
def llm() -> _DummyLLM:
    return _DummyLLM()


@pytest.fixture
def backend(llm: _DummyLLM) -> _DummyBackend:
    return _DummyBackend(llm)


@pytest.fixture
def embed_model() -> _KeywordEmbedding:
    return _KeywordEmbedding()


@pytest.fixture
def rag_context(config, embed_model, persistence, backend) -> RAGContext:
    context = build_context(config, embed_model=embed_model, persistence=persistence, backend=backend)
    yield context
    context.close()
