"""
Тесты индексации файлов в векторное хранилище.

Сценарии:
- нарезка и прогресс по файлам, пропуск пустых и уже проиндексированных
- проверка параметров до обработки файлов
- частичная ошибка: обработанные файлы остаются, последующие не трогаются

Запуск тестов:
  pytest -q tests/test_indexer.py
"""

from typing import List

import pytest

from rag_engine.errors import StoreNotInitializedError
from rag_engine.indexer import FileProgress, SourceFile


@pytest.mark.asyncio
async def test_index_files_with_progress(rag_context) -> None:
    await rag_context.initialize()
    progress: List[FileProgress] = []

    report = await rag_context.indexer.index_files(
        [SourceFile("paris.txt", "Paris " * 200), SourceFile("empty.txt", "")],
        chunk_size=500,
        chunk_overlap=50,
        on_progress=progress.append,
    )

    assert report == progress
    assert progress[0] == FileProgress(file_name="paris.txt", chunk_count=3)
    assert progress[1] == FileProgress(file_name="empty.txt", skipped=True, reason="empty")
    stats = await rag_context.store.get_stats()
    assert stats.total_chunks == 3
    assert stats.total_documents == 1


@pytest.mark.asyncio
async def test_reindex_is_skipped_and_stats_unchanged(rag_context) -> None:
    await rag_context.initialize()
    files = [SourceFile("paris.txt", "Paris is the capital of France. " * 40)]
    await rag_context.indexer.index_files(files)
    before = await rag_context.store.get_stats()

    (again,) = await rag_context.indexer.index_files(files)

    assert again.skipped and again.reason == "already_indexed"
    assert await rag_context.store.get_stats() == before


@pytest.mark.asyncio
async def test_invalid_params_rejected_before_any_file(rag_context) -> None:
    await rag_context.initialize()
    progress: List[FileProgress] = []

    with pytest.raises(ValueError):
        await rag_context.indexer.index_files(
            [SourceFile("a.txt", "rain")], chunk_size=50, chunk_overlap=0, on_progress=progress.append
        )
    with pytest.raises(ValueError):
        await rag_context.indexer.index_files(
            [SourceFile("a.txt", "rain")], chunk_size=500, chunk_overlap=300, on_progress=progress.append
        )

    assert progress == []
    assert rag_context.store.count() == 0


@pytest.mark.asyncio
async def test_index_requires_initialized_store(rag_context) -> None:
    with pytest.raises(StoreNotInitializedError):
        await rag_context.indexer.index_files([SourceFile("a.txt", "rain")])


@pytest.mark.asyncio
async def test_partial_failure_keeps_processed_files(rag_context, monkeypatch) -> None:
    await rag_context.initialize()
    store = rag_context.store
    original = store.add_documents
    seen: List[str] = []

    async def flaky_add(nodes):
        source = nodes[0].metadata["source"]
        seen.append(source)
        if source == "b.txt":
            raise RuntimeError("embedding backend crashed")
        return await original(nodes)

    monkeypatch.setattr(store, "add_documents", flaky_add)

    with pytest.raises(RuntimeError):
        await rag_context.indexer.index_files(
            [SourceFile("a.txt", "rain " * 30), SourceFile("b.txt", "paris"), SourceFile("c.txt", "snake")]
        )

    assert seen == ["a.txt", "b.txt"]
    assert await store.file_exists("a.txt")
    assert not await store.file_exists("c.txt")
