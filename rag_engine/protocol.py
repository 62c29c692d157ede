#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Типизированные сообщения протокола актора.

Запрос: {type, requestId, payload}; ответ: {type, requestId, payload, final}.
На проводе поля в camelCase, в Python в snake_case.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RequestType(str, Enum):
    INIT = "INIT"
    LOAD_MODEL = "LOAD_MODEL"
    INDEX_DOCUMENTS = "INDEX_DOCUMENTS"
    QUERY = "QUERY"
    GET_STATS = "GET_STATS"
    CLEAR_DATABASE = "CLEAR_DATABASE"
    CLEAR_MEMORY = "CLEAR_MEMORY"
    GENERATE_SYNTHETIC = "GENERATE_SYNTHETIC"


class ResponseType(str, Enum):
    READY = "READY"
    INIT_SUCCESS = "INIT_SUCCESS"
    MODEL_PROGRESS = "MODEL_PROGRESS"
    MODEL_LOADED = "MODEL_LOADED"
    INDEX_PROGRESS = "INDEX_PROGRESS"
    INDEX_COMPLETE = "INDEX_COMPLETE"
    STATS_RESULT = "STATS_RESULT"
    QUERY_CHUNK = "QUERY_CHUNK"
    QUERY_RESULT = "QUERY_RESULT"
    DATABASE_CLEARED = "DATABASE_CLEARED"
    MEMORY_CLEARED = "MEMORY_CLEARED"
    SYNTHETIC_GENERATED = "SYNTHETIC_GENERATED"
    ERROR = "ERROR"


class WireModel(BaseModel):
    """База для сообщений: camelCase-алиасы, приём и по имени поля."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class FileItem(WireModel):
    name: str
    content: str = ""


class IndexDocumentsPayload(WireModel):
    files: List[FileItem] = Field(default_factory=list)
    chunk_size: int = 500
    chunk_overlap: int = 50


class ChatTurn(WireModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str


class QueryPayload(WireModel):
    query: str
    chat_history: List[ChatTurn] = Field(default_factory=list)


class SyntheticRequestPayload(WireModel):
    topic: str


class StatsPayload(WireModel):
    total_documents: int = 0
    total_chunks: int = 0
    average_chunk_length: int = 0


class ModelProgressPayload(WireModel):
    progress: float


class IndexProgressPayload(WireModel):
    file_name: str
    chunk_count: int = 0
    skipped: bool = False
    reason: Optional[str] = None


class IndexCompletePayload(WireModel):
    files: List[IndexProgressPayload] = Field(default_factory=list)
    chunks_added: int = 0


class QueryChunkPayload(WireModel):
    chunk: str


class QueryResultPayload(WireModel):
    response: str
    is_fallback: bool = False


class SyntheticGeneratedPayload(WireModel):
    content: str
    topic: str


class ErrorPayload(WireModel):
    error: str
    error_type: Optional[str] = None


class RAGRequest(WireModel):
    # type принимается строкой: неизвестный тип превращается в ответ ERROR, а не в ошибку валидации
    type: str
    request_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class RAGResponse(WireModel):
    type: ResponseType
    request_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    final: bool = False


def make_response(
    type_: ResponseType,
    request_id: Optional[str],
    payload: Optional[WireModel] = None,
    final: bool = False,
) -> RAGResponse:
    return RAGResponse(
        type=type_,
        request_id=request_id,
        payload=payload.to_wire() if payload is not None else {},
        final=final,
    )


def error_response(request_id: Optional[str], error: str, error_type: Optional[str] = None) -> RAGResponse:
    return make_response(
        ResponseType.ERROR,
        request_id,
        ErrorPayload(error=error, error_type=error_type),
        final=True,
    )
