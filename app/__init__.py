"""FastAPI-приложение: WebSocket-протокол актора и REST-эндпоинты."""
