#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Single-flight: конкурентные вызовы разделяют одну асинхронную операцию."""

import asyncio
from typing import Any, Awaitable, Callable, Optional


class SingleFlight:
    """Держит не более одной выполняющейся операции.

    Первый вызывающий запускает фабрику как задачу, остальные ждут ту же
    задачу. Ожидание идёт через asyncio.shield: таймаут или отмена
    ожидающего не отменяет общую работу. После завершения задача
    забывается, поэтому неудача не кэшируется и следующий вызов стартует заново.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, factory: Callable[[], Awaitable[Any]], timeout: Optional[float] = None) -> Any:
        """Запускает или присоединяется к операции; timeout ограничивает только ожидание."""
        if self._task is None:
            self._task = asyncio.ensure_future(factory())
            self._task.add_done_callback(self._forget)
        task = self._task
        if timeout is None:
            return await asyncio.shield(task)
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    def _forget(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        # помечаем исключение прочитанным, даже если все ожидающие ушли по таймауту
        if not task.cancelled():
            task.exception()
