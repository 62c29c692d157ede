#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional

from llama_index.core.llms import LLM, ChatMessage, MessageRole

from .config import GenerationConfig, LLMConfig, MemoryConfig, RetrievalConfig, StreamingConfig
from .loader import ModelLoader
from .memory import ConversationMemory, ConversationTurn
from .streaming import ProvisionalText, StreamBuffer
from .vectorstore import SearchResult, VectorStore

logger = logging.getLogger(__name__)

NO_DOCUMENTS_MESSAGE = "No relevant documents found in the knowledge base."

SYSTEM_PROMPT = """You are a helpful AI assistant. Your role is to answer questions using ONLY the provided context from the knowledge base.

IMPORTANT RULES:
- You are the ASSISTANT (AI)
- The user asks questions
- Only use information from the provided context
- If the context doesn't contain the answer, say so
- Do not make up information
- You can reference previous conversation if it's relevant
- Be concise and accurate"""


class QueryState(str, Enum):
    IDLE = "IDLE"
    EMBEDDING_RETRIEVAL = "EMBEDDING_RETRIEVAL"
    RETRIEVED = "RETRIEVED"
    MODEL_LOADING_WAIT = "MODEL_LOADING_WAIT"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    FALLBACK = "FALLBACK"
    GENERATING = "GENERATING"
    STREAMING = "STREAMING"
    FINALIZED = "FINALIZED"


@dataclass
class QueryResult:
    """Финальный ответ на вопрос; он заменяет всё, что было выдано стримом."""
    response: str
    is_fallback: bool
    sources: List[SearchResult] = field(default_factory=list)


def format_fallback(results: List[SearchResult]) -> str:
    """Ответ без модели: пронумерованные фрагменты поиска."""
    if not results:
        return NO_DOCUMENTS_MESSAGE
    return "\n\n".join(f"[{i}] {r.text}" for i, r in enumerate(results, start=1))


class ConversationalRAG:
    """Разговорный движок RAG: извлечение, сборка промпта, стриминг, память.

    - retrieval: top-k чанков из VectorStore становятся контекстом
    - generation: промпт (system + последние реплики + вопрос с контекстом)
      генерируется с консервативными параметрами, фрагменты батчатся
    - fallback: если модель недоступна или генерация упала, отвечаем
      найденными фрагментами без модели
    """
    def __init__(
        self,
        store: VectorStore,
        loader: ModelLoader,
        memory: ConversationMemory,
        llm_cfg: LLMConfig,
        gen_cfg: GenerationConfig,
        ret_cfg: RetrievalConfig,
        mem_cfg: MemoryConfig,
        stream_cfg: StreamingConfig,
    ) -> None:
        self._store = store
        self._loader = loader
        self.memory = memory
        self._llm_cfg = llm_cfg
        self._gen_cfg = gen_cfg
        self._ret_cfg = ret_cfg
        self._mem_cfg = mem_cfg
        self._stream_cfg = stream_cfg
        self.state = QueryState.IDLE

    def _transition(self, state: QueryState) -> None:
        logger.debug("Запрос: %s -> %s", self.state.value, state.value)
        self.state = state

    def build_chat(self, query: str, context_text: str) -> List[ChatMessage]:
        """Собирает диалог для модели: system, последние реплики памяти, вопрос с контекстом."""
        history = [
            ChatMessage(
                role=MessageRole.USER if turn.role == "user" else MessageRole.ASSISTANT,
                content=turn.content,
            )
            for turn in self.memory.recent(self._mem_cfg.prompt_turns)
        ]
        question = (
            f"Context from knowledge base:\n{context_text}\n\n"
            f"User question: {query}\n\n"
            "Answer based on the context above:"
        )
        return [
            ChatMessage(role=MessageRole.SYSTEM, content=SYSTEM_PROMPT),
            *history,
            ChatMessage(role=MessageRole.USER, content=question),
        ]

    async def _ensure_model(self, on_progress: Optional[Callable[[float], None]] = None) -> Optional[LLM]:
        """Ждёт модель не дольше load_timeout; None, если она так и не стала доступна."""
        if self._loader.is_loaded:
            return self._loader.handle
        self._transition(QueryState.MODEL_LOADING_WAIT)
        if self._loader.is_loading:
            logger.info("Модель уже загружается, ожидание общей загрузки")
        else:
            logger.info("Модель не загружена, запуск загрузки")
        try:
            return await self._loader.ensure_loaded(on_progress=on_progress, timeout=self._llm_cfg.load_timeout)
        except asyncio.TimeoutError:
            logger.warning("Модель не загрузилась за %.0f с, ответ из поиска", self._llm_cfg.load_timeout)
        except Exception as exc:
            logger.warning("Модель недоступна (%s), ответ из поиска", exc)
        self._transition(QueryState.MODEL_UNAVAILABLE)
        return None

    def _fallback(
        self,
        results: List[SearchResult],
        on_chunk: Optional[Callable[[str], None]],
        streamed: str = "",
    ) -> QueryResult:
        """Ответ из поиска; уже выданный стримом текст остаётся префиксом ответа."""
        self._transition(QueryState.FALLBACK)
        response = format_fallback(results)
        if streamed:
            response = f"{streamed}\n\n{response}"
        if on_chunk is not None:
            on_chunk(response[len(streamed):])
        self._transition(QueryState.IDLE)
        return QueryResult(response=response, is_fallback=True, sources=results)

    async def _generate(self, llm: LLM, prompt: str, buffer: StreamBuffer) -> str:
        self._transition(QueryState.GENERATING)
        text = ProvisionalText(prompt)
        try:
            stream = await llm.astream_complete(prompt, formatted=True, **self._gen_cfg.as_kwargs())
            self._transition(QueryState.STREAMING)
            async for part in stream:
                delta = part.delta if part.delta is not None else part.text[len(text.raw):]
                buffer.append(text.feed(delta))
            buffer.append(text.finish())
        except BaseException:
            # несброшенный остаток не уходит вызывающему
            buffer.discard()
            raise
        buffer.close()
        return text.text

    async def query(
        self,
        query: str,
        chat_history: Optional[Iterable[ConversationTurn]] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> QueryResult:
        """Отвечает на вопрос.

        on_chunk получает фрагменты стрима: их склейка всегда равна финальному
        ответу, в том числе при обрыве генерации. on_progress получает прогресс
        загрузки модели, если вопрос её ждёт.
        """
        history = list(chat_history or [])
        if history:
            self.memory.replace(history)
        self.memory.append("user", query)

        self._transition(QueryState.EMBEDDING_RETRIEVAL)
        try:
            results = await self._store.similarity_search(query, self._ret_cfg.similarity_top_k)
        except Exception:
            self._transition(QueryState.IDLE)
            raise
        self._transition(QueryState.RETRIEVED)
        context_text = "\n\n".join(r.text for r in results)

        llm = await self._ensure_model(on_progress)
        if llm is None:
            return self._fallback(results, on_chunk)

        prompt = llm.messages_to_prompt(self.build_chat(query, context_text))
        buffer = StreamBuffer(
            on_chunk or (lambda _chunk: None),
            min_chars=self._stream_cfg.min_chunk_chars,
            flush_delay=self._stream_cfg.flush_delay,
        )
        try:
            response = await self._generate(llm, prompt, buffer)
        except Exception as exc:
            logger.warning("Генерация не удалась, ответ из поиска: %s", exc)
            return self._fallback(results, on_chunk, streamed=buffer.emitted)

        self.memory.append("assistant", response)
        self._transition(QueryState.FINALIZED)
        self._transition(QueryState.IDLE)
        return QueryResult(response=response, is_fallback=False, sources=results)

    def clear_memory(self) -> None:
        self.memory.clear()
