#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Настройка логирования приложения (stdlib logging)."""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Настраивает корневой логгер пакета rag_engine.

    - level: уровень логирования (по умолчанию RAG_LOG_LEVEL или INFO)
    - log_file: путь к файлу лога (по умолчанию RAG_LOG_FILE, иначе только stderr)

    Повторный вызов не дублирует обработчики.
    """
    logger = logging.getLogger("rag_engine")
    level_name = (level or os.environ.get("RAG_LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if getattr(logger, "_rag_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    log_path = log_file or os.environ.get("RAG_LOG_FILE")
    if log_path:
        path = Path(log_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path,
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError:
            logger.exception("Не удалось включить файловый лог %s", path)

    logger.propagate = False
    logger._rag_configured = True  # type: ignore[attr-defined]
    return logger
