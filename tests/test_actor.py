"""
Тесты актора RAG и клиента протокола.

Сценарии:
- READY, ровно один финальный ответ на каждый запрос
- ошибки протокола (неизвестный тип, неверный payload, запрос до INIT)
- конкурентные INIT и LOAD_MODEL разделяют одну операцию
- полный цикл INDEX_DOCUMENTS -> QUERY со стримингом
- клиент: ретраи INIT, таймауты ожидания, перевод ERROR в исключение

Запуск тестов:
  pytest -q tests/test_actor.py
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from rag_engine.actor import RAGActor
from rag_engine.client import RAGClient
from rag_engine.config import ClientConfig
from rag_engine.errors import RequestFailedError, RequestTimeoutError, StoreInitializationError
from rag_engine.persistence import ChunkRecord
from rag_engine.protocol import FileItem, RAGRequest, RAGResponse, ResponseType


@pytest.fixture
async def actor(rag_context):
    rag_actor = RAGActor(rag_context)
    await rag_actor.start()
    yield rag_actor
    await rag_actor.stop()


async def _collect(actor: RAGActor, type_: str, payload: Optional[Dict[str, Any]] = None, rid: str = "r1") -> List[RAGResponse]:
    request = RAGRequest(type=type_, request_id=rid, payload=payload or {})
    return [message async for message in actor.submit(request)]


def _files() -> List[Dict[str, str]]:
    return [
        {"name": "geo.txt", "content": "Paris is the capital of France."},
        {"name": "zoo.txt", "content": "A python is a large snake."},
    ]


@pytest.mark.asyncio
async def test_start_returns_ready(rag_context) -> None:
    rag_actor = RAGActor(rag_context)
    ready = await rag_actor.start()
    try:
        assert ready.type == ResponseType.READY
        assert rag_actor.ready.is_set()
        assert ready.to_wire()["type"] == "READY"
    finally:
        await rag_actor.stop()


@pytest.mark.asyncio
async def test_unknown_type_and_invalid_payload(actor) -> None:
    (unknown,) = await _collect(actor, "FOO", rid="x")
    assert unknown.type == ResponseType.ERROR and unknown.final
    assert unknown.request_id == "x"
    assert unknown.payload["errorType"] == "FOO"

    (invalid,) = await _collect(actor, "QUERY", {"chatHistory": []})
    assert invalid.type == ResponseType.ERROR
    assert invalid.payload["errorType"] == "QUERY"


@pytest.mark.asyncio
async def test_requests_before_init(actor) -> None:
    (query,) = await _collect(actor, "QUERY", {"query": "paris"})
    assert query.type == ResponseType.ERROR
    assert query.payload["error"] == "RAG system not initialized"

    messages = await _collect(actor, "INDEX_DOCUMENTS", {"files": _files()})
    assert messages[-1].type == ResponseType.ERROR
    assert messages[-1].payload["errorType"] == "INDEX_DOCUMENTS"

    (stats,) = await _collect(actor, "GET_STATS")
    assert stats.type == ResponseType.STATS_RESULT
    assert stats.payload == {"totalDocuments": 0, "totalChunks": 0, "averageChunkLength": 0}


@pytest.mark.asyncio
async def test_concurrent_init_is_single_effort(actor, rag_context) -> None:
    results = await asyncio.gather(*(_collect(actor, "INIT", rid=f"i{i}") for i in range(3)))

    for (message,) in results:
        assert message.type == ResponseType.INIT_SUCCESS
        assert message.payload["totalChunks"] == 0
    assert rag_context.is_initialized


@pytest.mark.asyncio
async def test_concurrent_load_model_loads_once(actor, backend) -> None:
    backend.delay = 0.1

    first, second = await asyncio.gather(
        _collect(actor, "LOAD_MODEL", rid="m1"),
        _collect(actor, "LOAD_MODEL", rid="m2"),
    )

    assert backend.loads == 1
    for messages in (first, second):
        assert messages[-1].type == ResponseType.MODEL_LOADED and messages[-1].final
        progress = [m.payload["progress"] for m in messages if m.type == ResponseType.MODEL_PROGRESS]
        assert progress and progress[-1] == 1.0
        assert all(not m.final for m in messages[:-1])


@pytest.mark.asyncio
async def test_index_then_query_with_streaming(actor, llm) -> None:
    await _collect(actor, "INIT")

    messages = await _collect(actor, "INDEX_DOCUMENTS", {"files": _files(), "chunkSize": 500, "chunkOverlap": 50})
    types = [m.type for m in messages]
    assert types == [
        ResponseType.INDEX_PROGRESS,
        ResponseType.INDEX_PROGRESS,
        ResponseType.INDEX_COMPLETE,
        ResponseType.STATS_RESULT,
    ]
    assert messages[0].payload["fileName"] == "geo.txt"
    assert messages[2].payload["chunksAdded"] == 2
    assert messages[-1].payload["totalChunks"] == 2
    assert messages[-1].payload["totalDocuments"] == 2

    messages = await _collect(actor, "QUERY", {"query": "capital of France?"})
    chunks = [m.payload["chunk"] for m in messages if m.type == ResponseType.QUERY_CHUNK]
    final = messages[-1]
    assert final.type == ResponseType.QUERY_RESULT
    assert final.payload == {"response": llm.text, "isFallback": False}
    assert "".join(chunks) == llm.text


@pytest.mark.asyncio
async def test_index_partial_failure_emits_stats_then_error(actor, rag_context, monkeypatch) -> None:
    await _collect(actor, "INIT")
    original = rag_context.store.add_documents

    async def flaky_add(nodes):
        if nodes[0].metadata["source"] == "zoo.txt":
            raise RuntimeError("disk full")
        return await original(nodes)

    monkeypatch.setattr(rag_context.store, "add_documents", flaky_add)

    messages = await _collect(actor, "INDEX_DOCUMENTS", {"files": _files()})

    assert [m.type for m in messages] == [
        ResponseType.INDEX_PROGRESS,
        ResponseType.STATS_RESULT,
        ResponseType.ERROR,
    ]
    assert messages[1].payload["totalChunks"] == 1
    assert messages[-1].payload == {"error": "disk full", "errorType": "INDEX_DOCUMENTS"}


@pytest.mark.asyncio
async def test_clear_database_and_memory(actor, rag_context) -> None:
    await _collect(actor, "INIT")
    await _collect(actor, "INDEX_DOCUMENTS", {"files": _files()})
    await _collect(actor, "QUERY", {"query": "paris"})
    assert len(rag_context.memory) == 2

    (cleared,) = await _collect(actor, "CLEAR_DATABASE")
    assert cleared.type == ResponseType.DATABASE_CLEARED
    assert cleared.payload["totalChunks"] == 0
    assert len(rag_context.memory) == 0

    rag_context.memory.append("user", "hi")
    (memory,) = await _collect(actor, "CLEAR_MEMORY")
    assert memory.type == ResponseType.MEMORY_CLEARED
    assert len(rag_context.memory) == 0


@pytest.mark.asyncio
async def test_clear_database_before_init_is_rejected(actor, rag_context, persistence) -> None:
    persistence.rows = [ChunkRecord(id=1, vector=[1.0] * 8, text="Paris is the capital of France.", metadata={"source": "geo.txt"})]

    (cleared,) = await _collect(actor, "CLEAR_DATABASE")
    assert cleared.type == ResponseType.ERROR
    assert cleared.payload == {"error": "RAG system not initialized", "errorType": "CLEAR_DATABASE"}
    assert len(persistence.rows) == 1

    (init,) = await _collect(actor, "INIT")
    assert init.type == ResponseType.INIT_SUCCESS
    assert init.payload["totalChunks"] == 1


@pytest.mark.asyncio
async def test_query_waiting_for_model_streams_progress(actor, backend) -> None:
    backend.delay = 0.05
    await _collect(actor, "INIT")
    await _collect(actor, "INDEX_DOCUMENTS", {"files": _files()})

    messages = await _collect(actor, "QUERY", {"query": "capital of France?"})

    types = [m.type for m in messages]
    assert types[-1] == ResponseType.QUERY_RESULT
    assert messages[-1].payload["isFallback"] is False
    progress = [m.payload["progress"] for m in messages if m.type == ResponseType.MODEL_PROGRESS]
    assert progress and progress[-1] == 1.0
    assert types.index(ResponseType.QUERY_CHUNK) > max(i for i, t in enumerate(types) if t == ResponseType.MODEL_PROGRESS)
    assert all(not m.final for m in messages[:-1])


@pytest.mark.asyncio
async def test_generate_synthetic(actor, llm) -> None:
    (message,) = await _collect(actor, "GENERATE_SYNTHETIC", {"topic": "Python"})

    assert message.type == ResponseType.SYNTHETIC_GENERATED
    assert message.payload == {"content": llm.text, "topic": "Python"}
    assert "Topic: Python\n\nGenerate 5 training examples" in llm.prompts[-1]
    assert llm.calls[-1] == {"temperature": 0.7, "top_p": 0.9, "max_tokens": 512}


@pytest.mark.asyncio
async def test_generate_synthetic_without_model(actor, backend) -> None:
    backend.fail = True

    (message,) = await _collect(actor, "GENERATE_SYNTHETIC", {"topic": "Python"})

    assert message.type == ResponseType.ERROR
    assert message.payload["errorType"] == "GENERATE_SYNTHETIC"


@pytest.mark.asyncio
async def test_client_full_cycle(actor, llm) -> None:
    client = RAGClient(actor, ClientConfig(ready_timeout=0.5))
    progress = []
    chunks: List[str] = []

    stats = await client.connect()
    assert stats.total_chunks == 0

    stats = await client.index_documents([FileItem(**f) for f in _files()], on_progress=progress.append)
    assert stats.total_chunks == 2
    assert [p.file_name for p in progress] == ["geo.txt", "zoo.txt"]

    result = await client.query("capital of France?", on_chunk=chunks.append)
    assert result.response == llm.text and not result.is_fallback
    assert "".join(chunks) == result.response

    synthetic = await client.generate_synthetic("Paris")
    assert synthetic.topic == "Paris"

    assert (await client.clear_database()).total_chunks == 0
    await client.clear_memory()


@pytest.mark.asyncio
async def test_client_maps_error_to_exception(actor) -> None:
    client = RAGClient(actor)

    with pytest.raises(RequestFailedError) as exc_info:
        await client.query("paris")

    assert exc_info.value.error == "RAG system not initialized"
    assert exc_info.value.error_type == "QUERY"


@pytest.mark.asyncio
async def test_client_init_retries(actor, rag_context, monkeypatch) -> None:
    original = rag_context.initialize
    attempts = []

    async def flaky_initialize():
        attempts.append(1)
        if len(attempts) == 1:
            raise StoreInitializationError("Initialization timeout")
        await original()

    monkeypatch.setattr(rag_context, "initialize", flaky_initialize)
    client = RAGClient(actor, ClientConfig(init_attempts=3, init_retry_delay=0.0))

    stats = await client.initialize()

    assert len(attempts) == 2
    assert stats.total_documents == 0



@pytest.mark.asyncio
async def test_client_init_gives_up_after_last_attempt(actor, rag_context, monkeypatch) -> None:
    attempts = []

    async def broken_initialize():
        attempts.append(1)
        raise StoreInitializationError("Initialization timeout")

    monkeypatch.setattr(rag_context, "initialize", broken_initialize)
    client = RAGClient(actor, ClientConfig(init_attempts=3, init_retry_delay=0.0))

    with pytest.raises(RequestFailedError) as exc_info:
        await client.initialize()

    assert len(attempts) == 3
    assert exc_info.value.error == "Initialization timeout"
    assert exc_info.value.error_type == "INIT"


@pytest.mark.asyncio
async def test_client_timeout_does_not_stop_core(actor, rag_context, backend) -> None:
    backend.delay = 0.3
    client = RAGClient(actor, ClientConfig(model_timeout=0.05))

    with pytest.raises(RequestTimeoutError):
        await client.load_model()

    await rag_context.loader.ensure_loaded()
    assert backend.loads == 1
    assert rag_context.loader.is_loaded
