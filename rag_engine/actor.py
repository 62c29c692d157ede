#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Актор RAG: ядро доступно только через типизированные запросы и ответы.

Каждый запрос получает ровно один финальный ответ (успех или ERROR).
INIT и LOAD_MODEL выполняются конкурентно: они лишь ждут общие
single-flight операции. Остальные запросы обрабатываются строго по одному
в порядке поступления.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set, Tuple

from .context import RAGContext
from .errors import GenerationUnavailableError, StoreNotInitializedError
from .indexer import FileProgress, SourceFile
from .memory import ConversationTurn
from .protocol import (
    IndexCompletePayload,
    IndexDocumentsPayload,
    IndexProgressPayload,
    ModelProgressPayload,
    QueryChunkPayload,
    QueryPayload,
    QueryResultPayload,
    RAGRequest,
    RAGResponse,
    RequestType,
    ResponseType,
    StatsPayload,
    SyntheticGeneratedPayload,
    SyntheticRequestPayload,
    error_response,
    make_response,
)
from .vectorstore import StoreStats

logger = logging.getLogger(__name__)

Emit = Callable[[RAGResponse], None]
Handler = Callable[[RAGRequest, Emit], Awaitable[RAGResponse]]

_CONCURRENT = {RequestType.INIT.value, RequestType.LOAD_MODEL.value}


def _stats_payload(stats: StoreStats) -> StatsPayload:
    return StatsPayload(
        total_documents=stats.total_documents,
        total_chunks=stats.total_chunks,
        average_chunk_length=stats.average_chunk_length,
    )


def _progress_payload(progress: FileProgress) -> IndexProgressPayload:
    return IndexProgressPayload(
        file_name=progress.file_name,
        chunk_count=progress.chunk_count,
        skipped=progress.skipped,
        reason=progress.reason,
    )


class RAGActor:
    def __init__(self, context: RAGContext) -> None:
        self.context = context
        self.ready = asyncio.Event()
        self._mailbox: "asyncio.Queue[Tuple[RAGRequest, Emit]]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[RequestType, Handler] = {
            RequestType.INIT: self._handle_init,
            RequestType.LOAD_MODEL: self._handle_load_model,
            RequestType.INDEX_DOCUMENTS: self._handle_index,
            RequestType.QUERY: self._handle_query,
            RequestType.GET_STATS: self._handle_stats,
            RequestType.CLEAR_DATABASE: self._handle_clear_database,
            RequestType.CLEAR_MEMORY: self._handle_clear_memory,
            RequestType.GENERATE_SYNTHETIC: self._handle_synthetic,
        }

    # ---------- жизненный цикл ----------

    async def start(self) -> RAGResponse:
        """Запускает обработку почтового ящика и возвращает сообщение READY."""
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
        self.ready.set()
        logger.info("Актор RAG запущен (READY)")
        return make_response(ResponseType.READY, None)

    async def stop(self) -> None:
        pending = [t for t in (self._worker, *self._tasks) if t is not None]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._worker = None
        self._tasks.clear()
        self.ready.clear()

    # ---------- вход ----------

    def submit(self, request: RAGRequest) -> AsyncIterator[RAGResponse]:
        """Ставит запрос в очередь; итератор отдаёт ответы до финального включительно."""
        outbox: "asyncio.Queue[RAGResponse]" = asyncio.Queue()
        self._mailbox.put_nowait((request, outbox.put_nowait))
        return self._drain(outbox)

    @staticmethod
    async def _drain(outbox: "asyncio.Queue[RAGResponse]") -> AsyncIterator[RAGResponse]:
        while True:
            message = await outbox.get()
            yield message
            if message.final:
                return

    async def call(self, request: RAGRequest, on_message: Optional[Emit] = None) -> RAGResponse:
        """Возвращает финальный ответ; промежуточные уходят в on_message."""
        async for message in self.submit(request):
            if message.final:
                return message
            if on_message is not None:
                on_message(message)
        raise RuntimeError("Ответы закончились без финального сообщения")

    # ---------- диспетчеризация ----------

    async def _run(self) -> None:
        while True:
            request, emit = await self._mailbox.get()
            if request.type in _CONCURRENT:
                task = asyncio.create_task(self._dispatch(request, emit))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                await self._dispatch(request, emit)

    async def _dispatch(self, request: RAGRequest, emit: Emit) -> None:
        try:
            request_type = RequestType(request.type)
        except ValueError:
            logger.warning("Неизвестный тип запроса: %s", request.type)
            emit(error_response(request.request_id, f"Unknown request type: {request.type}", request.type))
            return

        def emit_partial(message: RAGResponse) -> None:
            message.final = False
            emit(message)

        try:
            response = await self._handlers[request_type](request, emit_partial)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Запрос %s (%s) завершился ошибкой: %s", request.request_id, request.type, exc)
            response = error_response(request.request_id, str(exc) or exc.__class__.__name__, request_type.value)
        response.final = True
        emit(response)

    def _require_initialized(self) -> None:
        if not self.context.is_initialized:
            raise StoreNotInitializedError("RAG system not initialized")

    # ---------- обработчики ----------

    async def _handle_init(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        await self.context.initialize()
        stats = await self.context.store.get_stats()
        return make_response(ResponseType.INIT_SUCCESS, request.request_id, _stats_payload(stats))

    async def _handle_load_model(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        def on_progress(value: float) -> None:
            emit(make_response(ResponseType.MODEL_PROGRESS, request.request_id, ModelProgressPayload(progress=value)))

        await self.context.loader.ensure_loaded(on_progress=on_progress)
        return make_response(ResponseType.MODEL_LOADED, request.request_id)

    async def _handle_index(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        payload = IndexDocumentsPayload.model_validate(request.payload)
        files = [SourceFile(name=f.name, content=f.content) for f in payload.files]

        def on_progress(progress: FileProgress) -> None:
            emit(make_response(ResponseType.INDEX_PROGRESS, request.request_id, _progress_payload(progress)))

        try:
            report = await self.context.indexer.index_files(
                files,
                chunk_size=payload.chunk_size,
                chunk_overlap=payload.chunk_overlap,
                on_progress=on_progress,
            )
        except Exception:
            # частично проиндексированные файлы остаются: сообщаем актуальную статистику
            stats = await self.context.store.get_stats()
            emit(make_response(ResponseType.STATS_RESULT, request.request_id, _stats_payload(stats)))
            raise

        emit(make_response(
            ResponseType.INDEX_COMPLETE,
            request.request_id,
            IndexCompletePayload(
                files=[_progress_payload(p) for p in report],
                chunks_added=sum(p.chunk_count for p in report),
            ),
        ))
        stats = await self.context.store.get_stats()
        return make_response(ResponseType.STATS_RESULT, request.request_id, _stats_payload(stats))

    async def _handle_query(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        payload = QueryPayload.model_validate(request.payload)
        self._require_initialized()

        def on_chunk(chunk: str) -> None:
            emit(make_response(ResponseType.QUERY_CHUNK, request.request_id, QueryChunkPayload(chunk=chunk)))

        def on_progress(value: float) -> None:
            emit(make_response(ResponseType.MODEL_PROGRESS, request.request_id, ModelProgressPayload(progress=value)))

        result = await self.context.engine.query(
            payload.query,
            chat_history=[ConversationTurn(role=t.role, content=t.content) for t in payload.chat_history],
            on_chunk=on_chunk,
            on_progress=on_progress,
        )
        return make_response(
            ResponseType.QUERY_RESULT,
            request.request_id,
            QueryResultPayload(response=result.response, is_fallback=result.is_fallback),
        )

    async def _handle_stats(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        stats = await self.context.store.get_stats()
        return make_response(ResponseType.STATS_RESULT, request.request_id, _stats_payload(stats))

    async def _handle_clear_database(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        # очистка возможна только после загрузки долговременной копии
        self._require_initialized()
        await self.context.store.clear_database()
        self.context.engine.clear_memory()
        stats = await self.context.store.get_stats()
        return make_response(ResponseType.DATABASE_CLEARED, request.request_id, _stats_payload(stats))

    async def _handle_clear_memory(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        self.context.engine.clear_memory()
        return make_response(ResponseType.MEMORY_CLEARED, request.request_id)

    async def _handle_synthetic(self, request: RAGRequest, emit: Emit) -> RAGResponse:
        payload = SyntheticRequestPayload.model_validate(request.payload)
        try:
            result = await self.context.synthetic.generate(payload.topic)
        except asyncio.TimeoutError as exc:
            raise GenerationUnavailableError("Model loading timeout") from exc
        return make_response(
            ResponseType.SYNTHETIC_GENERATED,
            request.request_id,
            SyntheticGeneratedPayload(content=result.content, topic=result.topic),
        )
