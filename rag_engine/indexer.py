#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .chunker import TextChunker, validate_chunk_params
from .config import IndexingConfig
from .errors import StoreNotInitializedError
from .vectorstore import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class SourceFile:
    """Входной файл: имя (становится metadata.source) и текст."""
    name: str
    content: str


@dataclass
class FileProgress:
    file_name: str
    chunk_count: int = 0
    skipped: bool = False
    reason: Optional[str] = None


class DocumentIndexer:
    """Индексатор файлов в векторное хранилище.

    1) Проверяет параметры нарезки до обработки любого файла
    2) Пропускает уже проиндексированные и пустые файлы
    3) Режет текст на окна и добавляет чанки в хранилище

    Файлы обрабатываются по порядку; при ошибке уже добавленные файлы
    остаются в хранилище, а последующие не обрабатываются.
    """
    def __init__(self, store: VectorStore, cfg: IndexingConfig) -> None:
        self.store = store
        self.cfg = cfg

    async def index_files(
        self,
        files: Sequence[SourceFile],
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        on_progress: Optional[Callable[[FileProgress], None]] = None,
    ) -> List[FileProgress]:
        chunk_size = self.cfg.chunk_size if chunk_size is None else chunk_size
        chunk_overlap = self.cfg.chunk_overlap if chunk_overlap is None else chunk_overlap
        validate_chunk_params(chunk_size, chunk_overlap, self.cfg)
        if not self.store.is_initialized:
            raise StoreNotInitializedError("RAG system not initialized")

        chunker = TextChunker(chunk_size, chunk_overlap, self.cfg)
        report: List[FileProgress] = []
        for file in files:
            if await self.store.file_exists(file.name):
                logger.info("Файл %s уже проиндексирован, пропуск", file.name)
                progress = FileProgress(file_name=file.name, skipped=True, reason="already_indexed")
            elif not file.content:
                logger.warning("Файл %s пуст, пропуск", file.name)
                progress = FileProgress(file_name=file.name, skipped=True, reason="empty")
            else:
                nodes = chunker.split(file.content, file.name)
                added = await self.store.add_documents(nodes)
                logger.info("Файл %s: добавлено %d чанков", file.name, added)
                progress = FileProgress(file_name=file.name, chunk_count=added)
            report.append(progress)
            if on_progress is not None:
                on_progress(progress)
        return report
