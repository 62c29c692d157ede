#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Ленивый загрузчик сервиса генерации с дедупликацией конкурентных загрузок."""

import asyncio
import logging
import math
import re
from typing import Any, Callable, List, Mapping, Optional

from llama_index.core.llms import LLM

from .llm import GenerationBackend
from .singleflight import SingleFlight

logger = logging.getLogger(__name__)

_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*%")


def _as_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(result) else result


def normalize_progress(progress: Any) -> float:
    """Приводит прогресс загрузчика к доле в [0, 1].

    Поддерживаемые формы:
    - число: доля как есть (0.42)
    - строка с процентом: "63%" или "[55/87]: 63%"
    - {loaded, total}: loaded / total
    - {progress: число | строка}: число как доля, строка как проценты
    """
    value = 0.0
    if isinstance(progress, bool):
        value = 0.0
    elif isinstance(progress, (int, float)):
        value = _as_float(progress)
    elif isinstance(progress, str):
        match = _PERCENT.search(progress)
        if match:
            value = float(match.group(1)) / 100
    elif isinstance(progress, Mapping):
        loaded, total = progress.get("loaded"), progress.get("total")
        if loaded is not None and total is not None:
            total_value = _as_float(total)
            value = _as_float(loaded) / total_value if total_value > 0 else 0.0
        elif progress.get("progress") is not None:
            inner = progress["progress"]
            value = _as_float(inner) if isinstance(inner, (int, float)) else _as_float(inner) / 100
    return max(0.0, min(1.0, value))


class ModelLoader:
    """Singleton-хэндл модели генерации.

    Первый вызов ensure_loaded() запускает загрузку в потоке, остальные
    ждут её же. Прогресс рассылается всем текущим ожидающим. Успешный хэндл
    кэшируется на всё время жизни процесса; неудача не кэшируется.
    """

    def __init__(self, backend: GenerationBackend) -> None:
        self.backend = backend
        self._handle: Optional[LLM] = None
        self._flight = SingleFlight("model-load")
        self._listeners: List[Callable[[float], None]] = []
        self.load_count = 0

    @property
    def handle(self) -> Optional[LLM]:
        return self._handle

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    @property
    def is_loading(self) -> bool:
        return self._flight.in_flight

    async def ensure_loaded(
        self,
        on_progress: Optional[Callable[[float], None]] = None,
        timeout: Optional[float] = None,
    ) -> LLM:
        """Возвращает загруженный хэндл; timeout ограничивает только ожидание вызывающего."""
        if self._handle is not None:
            return self._handle
        if on_progress is not None:
            self._listeners.append(on_progress)
        try:
            return await self._flight.run(self._load, timeout=timeout)
        finally:
            if on_progress is not None:
                self._listeners.remove(on_progress)

    def _broadcast(self, value: float) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Ошибка в обработчике прогресса загрузки")

    async def _load(self) -> LLM:
        loop = asyncio.get_running_loop()

        def report(raw: Any) -> None:
            # вызывается из потока загрузки
            loop.call_soon_threadsafe(self._broadcast, normalize_progress(raw))

        self.load_count += 1
        logger.info("Загрузка модели генерации (попытка %d)", self.load_count)
        try:
            handle = await asyncio.to_thread(self.backend.load, report)
        except Exception as exc:
            logger.warning("Загрузка модели не удалась: %s", exc)
            raise
        self._handle = handle
        self._broadcast(1.0)
        logger.info("Модель генерации загружена")
        return handle
