#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Иерархия исключений движка RAG."""

from typing import Optional


class RAGError(Exception):
    """Базовое исключение движка."""


class StoreInitializationError(RAGError):
    """Хранилище не удалось открыть или инициализировать."""


class StoreNotInitializedError(RAGError):
    """Операция над хранилищем до успешного initialize()."""


class ConnectionAlreadyOpenError(RAGError, RuntimeError):
    """Повторное открытие соединения движка хранения.

    Это ошибка программирования, а не повод для ретрая: соединение
    открывается ровно один раз на процесс.
    """


class EmbeddingDimensionError(RAGError, ValueError):
    """Размерность вектора не совпадает с размерностью хранилища."""


class GenerationUnavailableError(RAGError):
    """Сервис генерации недоступен (не загружен или загрузка упала)."""


class RequestFailedError(RAGError):
    """Терминальный ответ ERROR на стороне вызывающего."""

    def __init__(self, error: str, error_type: Optional[str] = None) -> None:
        super().__init__(error)
        self.error = error
        self.error_type = error_type


class RequestTimeoutError(RAGError, TimeoutError):
    """Вызывающий не дождался терминального ответа."""
