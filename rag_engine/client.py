#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from .actor import RAGActor
from .config import ClientConfig
from .errors import RequestFailedError, RequestTimeoutError
from .protocol import (
    ChatTurn,
    FileItem,
    IndexDocumentsPayload,
    IndexProgressPayload,
    QueryPayload,
    QueryResultPayload,
    RAGRequest,
    RAGResponse,
    RequestType,
    ResponseType,
    StatsPayload,
    SyntheticGeneratedPayload,
    SyntheticRequestPayload,
)

logger = logging.getLogger(__name__)


class RAGClient:
    """Вызывающая сторона протокола.

    - connect(): ждёт READY (ограниченно) и инициализирует ядро с ретраями
    - каждый метод ждёт финальный ответ не дольше своего таймаута;
      таймаут не останавливает работу в ядре
    - ERROR превращается в RequestFailedError, таймаут в RequestTimeoutError
    """
    def __init__(self, actor: RAGActor, cfg: Optional[ClientConfig] = None) -> None:
        self.actor = actor
        self.cfg = cfg or ClientConfig()

    async def request(
        self,
        request_type: RequestType,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        on_message: Optional[Callable[[RAGResponse], None]] = None,
    ) -> RAGResponse:
        request = RAGRequest(type=request_type.value, request_id=uuid.uuid4().hex, payload=payload or {})
        timeout = self.cfg.default_timeout if timeout is None else timeout
        try:
            response = await asyncio.wait_for(self.actor.call(request, on_message), timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(f"{request_type.value} timeout after {timeout:.0f}s") from exc
        if response.type == ResponseType.ERROR:
            raise RequestFailedError(
                str(response.payload.get("error") or "Unknown error"),
                response.payload.get("errorType"),
            )
        return response

    async def connect(self) -> StatsPayload:
        """Handshake: READY (или таймаут ожидания READY), затем INIT."""
        try:
            await asyncio.wait_for(self.actor.ready.wait(), self.cfg.ready_timeout)
        except asyncio.TimeoutError:
            logger.warning("READY не получен за %.0f с, инициализация без него", self.cfg.ready_timeout)
        return await self.initialize()

    async def initialize(self) -> StatsPayload:
        """INIT с повторами; все попытки присоединяются к одной инициализации в ядре."""
        attempt = 1
        while True:
            try:
                response = await self.request(RequestType.INIT, timeout=self.cfg.init_timeout)
                return StatsPayload.model_validate(response.payload)
            except (RequestFailedError, RequestTimeoutError) as exc:
                logger.warning("INIT попытка %d/%d не удалась: %s", attempt, self.cfg.init_attempts, exc)
                if attempt >= self.cfg.init_attempts:
                    raise
            await asyncio.sleep(self.cfg.init_retry_delay)
            attempt += 1

    async def load_model(self, on_progress: Optional[Callable[[float], None]] = None) -> None:
        def on_message(message: RAGResponse) -> None:
            if on_progress is not None and message.type == ResponseType.MODEL_PROGRESS:
                on_progress(float(message.payload.get("progress", 0.0)))

        await self.request(RequestType.LOAD_MODEL, timeout=self.cfg.model_timeout, on_message=on_message)

    async def index_documents(
        self,
        files: Iterable[FileItem],
        chunk_size: int = 500,
        chunk_overlap: int = 50,
        on_progress: Optional[Callable[[IndexProgressPayload], None]] = None,
    ) -> StatsPayload:
        """Индексирует файлы; возвращает статистику после пакета."""
        payload = IndexDocumentsPayload(files=list(files), chunk_size=chunk_size, chunk_overlap=chunk_overlap)

        def on_message(message: RAGResponse) -> None:
            if on_progress is not None and message.type == ResponseType.INDEX_PROGRESS:
                on_progress(IndexProgressPayload.model_validate(message.payload))

        response = await self.request(
            RequestType.INDEX_DOCUMENTS,
            payload.to_wire(),
            timeout=self.cfg.index_timeout,
            on_message=on_message,
        )
        return StatsPayload.model_validate(response.payload)

    async def query(
        self,
        query: str,
        chat_history: Optional[List[ChatTurn]] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> QueryResultPayload:
        """Вопрос к базе знаний; финальный ответ заменяет текст, собранный из стрима."""
        payload = QueryPayload(query=query, chat_history=chat_history or [])

        def on_message(message: RAGResponse) -> None:
            if on_chunk is not None and message.type == ResponseType.QUERY_CHUNK:
                on_chunk(str(message.payload.get("chunk", "")))

        response = await self.request(
            RequestType.QUERY,
            payload.to_wire(),
            timeout=self.cfg.query_timeout,
            on_message=on_message,
        )
        return QueryResultPayload.model_validate(response.payload)

    async def get_stats(self) -> StatsPayload:
        response = await self.request(RequestType.GET_STATS)
        return StatsPayload.model_validate(response.payload)

    async def clear_database(self) -> StatsPayload:
        response = await self.request(RequestType.CLEAR_DATABASE)
        return StatsPayload.model_validate(response.payload)

    async def clear_memory(self) -> None:
        await self.request(RequestType.CLEAR_MEMORY)

    async def generate_synthetic(self, topic: str) -> SyntheticGeneratedPayload:
        payload = SyntheticRequestPayload(topic=topic)
        response = await self.request(
            RequestType.GENERATE_SYNTHETIC,
            payload.to_wire(),
            timeout=self.cfg.synthetic_timeout,
        )
        return SyntheticGeneratedPayload.model_validate(response.payload)
