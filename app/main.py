#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, List, Optional, Set, TypeVar

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from rag_engine.actor import RAGActor
from rag_engine.client import RAGClient
from rag_engine.config import AppConfig
from rag_engine.context import build_context
from rag_engine.errors import RequestFailedError, RequestTimeoutError
from rag_engine.logging_utils import configure_logging
from rag_engine.protocol import (
    IndexDocumentsPayload,
    IndexProgressPayload,
    QueryPayload,
    RAGRequest,
    RAGResponse,
    ResponseType,
    StatsPayload,
    SyntheticGeneratedPayload,
    SyntheticRequestPayload,
    error_response,
    make_response,
)

logger = logging.getLogger("rag_engine.app")

T = TypeVar("T")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Один контекст движка и один актор на процесс."""
    configure_logging()
    context = build_context(AppConfig.from_env())
    actor = RAGActor(context)
    await actor.start()
    app.state.context = context
    app.state.actor = actor
    app.state.client = RAGClient(actor, context.config.client)
    try:
        yield
    finally:
        await actor.stop()
        context.close()


app = FastAPI(title="Local RAG Engine API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class IngestResponse(BaseModel):
    """Ответ на индексацию: прогресс по файлам, итоговая статистика и длительность."""
    files: List[IndexProgressPayload]
    stats: StatsPayload
    took_ms: int


class QueryResponse(BaseModel):
    """Ответ на вопрос: текст, признак fallback и время выполнения."""
    answer: str
    is_fallback: bool
    took_ms: int


def _client(request: Request) -> RAGClient:
    return request.app.state.client


async def _guard(call: Awaitable[T]) -> T:
    """Переводит ошибки протокола в HTTP: ERROR -> 500, таймаут ожидания -> 504."""
    try:
        return await call
    except RequestTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except RequestFailedError as e:
        raise HTTPException(status_code=500, detail=e.error)


@app.get("/health")
def health(request: Request) -> Dict[str, Any]:
    """Простой health-check эндпоинт для мониторинга/оркестраторов."""
    context = request.app.state.context
    return {
        "status": "ok",
        "initialized": context.is_initialized,
        "model_loaded": context.loader.is_loaded,
    }


@app.post("/init", response_model=StatsPayload)
async def init(request: Request) -> StatsPayload:
    """Инициализирует ядро (эмбеддинги + хранилище) с повторами INIT."""
    return await _guard(_client(request).initialize())


@app.post("/model/load")
async def load_model(request: Request) -> Dict[str, str]:
    await _guard(_client(request).load_model())
    return {"status": "loaded"}


@app.post("/ingest", response_model=IngestResponse)
async def ingest(req: IndexDocumentsPayload, request: Request) -> IngestResponse:
    """Индексирует переданные файлы; уже проиндексированные и пустые пропускаются."""
    t0 = time.time()
    progress: List[IndexProgressPayload] = []
    stats = await _guard(
        _client(request).index_documents(
            req.files,
            chunk_size=req.chunk_size,
            chunk_overlap=req.chunk_overlap,
            on_progress=progress.append,
        )
    )
    took_ms = int((time.time() - t0) * 1000)
    return IngestResponse(files=progress, stats=stats, took_ms=took_ms)


@app.post("/query", response_model=QueryResponse)
async def query(req: QueryPayload, request: Request) -> QueryResponse:
    """Вопрос к базе знаний. Без модели отвечает найденными фрагментами (is_fallback)."""
    t0 = time.time()
    result = await _guard(_client(request).query(req.query, chat_history=req.chat_history))
    took_ms = int((time.time() - t0) * 1000)
    return QueryResponse(answer=result.response, is_fallback=result.is_fallback, took_ms=took_ms)


@app.get("/stats", response_model=StatsPayload)
async def stats(request: Request) -> StatsPayload:
    return await _guard(_client(request).get_stats())


@app.delete("/index", response_model=StatsPayload)
async def clear_index(request: Request) -> StatsPayload:
    """Очищает хранилище (и память диалога)."""
    return await _guard(_client(request).clear_database())


@app.delete("/memory")
async def clear_memory(request: Request) -> Dict[str, str]:
    await _guard(_client(request).clear_memory())
    return {"status": "cleared"}


@app.post("/synthetic", response_model=SyntheticGeneratedPayload)
async def synthetic(req: SyntheticRequestPayload, request: Request) -> SyntheticGeneratedPayload:
    return await _guard(_client(request).generate_synthetic(req.topic))


@app.websocket("/ws")
async def ws(websocket: WebSocket) -> None:
    """Протокол актора поверх WebSocket.

    После подключения отправляется READY; дальше каждый входящий JSON-запрос
    пересылается актору, а все его ответы (включая промежуточные) уходят
    обратно. На одном соединении допускается несколько запросов одновременно.
    """
    await websocket.accept()
    actor: RAGActor = websocket.app.state.actor
    send_lock = asyncio.Lock()
    tasks: Set[asyncio.Task] = set()

    async def send(message: RAGResponse) -> None:
        async with send_lock:
            await websocket.send_json(message.to_wire())

    async def forward(req: RAGRequest) -> None:
        async for message in actor.submit(req):
            await send(message)

    await send(make_response(ResponseType.READY, None))
    try:
        while True:
            raw = await websocket.receive_text()
            data: Optional[Dict[str, Any]] = None
            try:
                data = json.loads(raw)
                req = RAGRequest.model_validate(data)
            except (json.JSONDecodeError, ValidationError) as e:
                fields = data if isinstance(data, dict) else {}
                request_id = fields.get("requestId")
                request_type = fields.get("type")
                await send(error_response(
                    None if request_id is None else str(request_id),
                    f"Invalid request: {e}",
                    None if request_type is None else str(request_type),
                ))
                continue
            task = asyncio.create_task(forward(req))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
    except WebSocketDisconnect:
        logger.info("WebSocket-клиент отключился")
    finally:
        for task in list(tasks):
            task.cancel()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=False)
