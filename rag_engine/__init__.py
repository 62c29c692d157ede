"""Локальный встраиваемый RAG-движок.

Содержит:
- config: dataclass-конфиги эмбеддингов, хранилища, LLM, генерации, индексирования и клиента
- chunker: нарезка текста на перекрывающиеся окна
- embeddings: сервис эмбеддингов поверх HuggingFace (LlamaIndex)
- persistence: долговременный снапшот чанков в Weaviate (embedded/remote)
- vectorstore: SQLite-хранилище чанков с косинусным поиском
- llm: адаптер LlamaIndex CustomLLM для OpenAI-совместимого Completions API
- loader: ленивая single-flight загрузка модели с прогрессом
- engine: разговорный RAG-движок (retrieval + streaming + fallback)
- indexer, synthetic: индексация файлов и генерация синтетических данных
- protocol, actor, client: типизированный протокол запросов/ответов
"""
