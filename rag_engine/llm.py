#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from llama_index.core.llms import (
    ChatMessage,
    CompletionResponse,
    CompletionResponseAsyncGen,
    CompletionResponseGen,
    CustomLLM,
    LLM,
    LLMMetadata,
)
from openai import AsyncOpenAI, OpenAI

from .config import LLMConfig
from .errors import GenerationUnavailableError

ProgressCallback = Callable[[Any], None]

# параметры, которые OpenAI SDK не знает: уходят в extra_body (vLLM их понимает)
_EXTRA_BODY_PARAMS = ("repetition_penalty",)


def chatml_messages_to_prompt(messages: Sequence[ChatMessage]) -> str:
    """Рендерит диалог в шаблон ChatML и добавляет приглашение ассистента."""
    parts = []
    for message in messages:
        role = message.role.value if hasattr(message.role, "value") else str(message.role)
        parts.append(f"<|im_start|>{role}\n{message.content or ''}<|im_end|>\n")
    parts.append("<|im_start|>assistant\n")
    return "".join(parts)


def strip_prompt_echo(text: str, prompt: str) -> str:
    """Убирает эхо промпта, если сервер вернул его в начале ответа."""
    if prompt and text.startswith(prompt):
        text = text[len(prompt):]
    return text.strip()


class OpenAICompletionLLM(CustomLLM):
    """Адаптер LlamaIndex CustomLLM для OpenAI-совместимого Completions API.

    Промпт уже отрендерен шаблоном чата (ChatML), поэтому используется
    /v1/completions, а не chat: так работают стоп-последовательности и
    repetition_penalty сервера. Поддерживает complete/stream_complete и их
    асинхронные варианты.
    """
    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str,
        temperature: float = 0.1,
        top_p: float = 0.9,
        max_tokens: int = 256,
        timeout: float = 120.0,
    ) -> None:
        super().__init__(messages_to_prompt=chatml_messages_to_prompt)
        self._client = OpenAI(base_url=base_url, api_key=api_key, timeout=timeout)
        self._aclient = AsyncOpenAI(base_url=base_url, api_key=api_key, timeout=timeout)
        self._model = model_name
        self._temperature = float(temperature)
        self._top_p = float(top_p)
        self._max_tokens = int(max_tokens)

    @property
    def metadata(self) -> LLMMetadata:
        return LLMMetadata(
            model_name=f"openai-compat::{self._model}",
            num_output=self._max_tokens,
        )

    def _request_kwargs(self, prompt: str, **overrides: Any) -> Dict[str, Any]:
        """Собирает параметры запроса: значения по умолчанию + переданные переопределения."""
        kwargs: Dict[str, Any] = {
            "model": self._model,
            "prompt": prompt,
            "temperature": self._temperature,
            "top_p": self._top_p,
            "max_tokens": self._max_tokens,
        }
        extra_body = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key in _EXTRA_BODY_PARAMS:
                extra_body[key] = value
            elif key in ("temperature", "top_p", "max_tokens", "stop"):
                kwargs[key] = value
        if extra_body:
            kwargs["extra_body"] = extra_body
        return kwargs

    def complete(self, prompt: str, formatted: bool = False, **kwargs: Any) -> CompletionResponse:
        """Синхронное получение единого текста ответа для переданного промпта."""
        resp = self._client.completions.create(**self._request_kwargs(prompt, **kwargs))
        return CompletionResponse(text=resp.choices[0].text or "")

    def stream_complete(self, prompt: str, formatted: bool = False, **kwargs: Any) -> CompletionResponseGen:
        """Потоковая генерация: возвращает нарастающий ответ частями."""
        stream = self._client.completions.create(stream=True, **self._request_kwargs(prompt, **kwargs))
        text = ""
        for event in stream:
            delta = event.choices[0].text if event.choices else ""
            if delta:
                text += delta
                yield CompletionResponse(text=text, delta=delta)

    async def acomplete(self, prompt: str, formatted: bool = False, **kwargs: Any) -> CompletionResponse:
        resp = await self._aclient.completions.create(**self._request_kwargs(prompt, **kwargs))
        return CompletionResponse(text=resp.choices[0].text or "")

    async def astream_complete(
        self, prompt: str, formatted: bool = False, **kwargs: Any
    ) -> CompletionResponseAsyncGen:
        stream = await self._aclient.completions.create(stream=True, **self._request_kwargs(prompt, **kwargs))

        async def gen() -> CompletionResponseAsyncGen:
            text = ""
            async for event in stream:
                delta = event.choices[0].text if event.choices else ""
                if delta:
                    text += delta
                    yield CompletionResponse(text=text, delta=delta)

        return gen()

    def available_models(self) -> List[str]:
        return [model.id for model in self._client.models.list()]


class GenerationBackend(Protocol):
    """Внешний сервис генерации: load(progress_callback) -> LLM (блокирующий вызов)."""

    def load(self, progress_callback: ProgressCallback) -> LLM: ...


class OpenAICompatBackend:
    """«Загрузка» модели на OpenAI-совместимом сервере (vLLM и т.п.).

    Проверяет, что сервер отвечает и обслуживает нужную модель; прогресс
    сообщается в форме {loaded, total} по шагам проверки.
    """
    def __init__(self, cfg: LLMConfig) -> None:
        self.cfg = cfg

    def load(self, progress_callback: Optional[ProgressCallback] = None) -> OpenAICompletionLLM:
        report = progress_callback or (lambda _progress: None)
        report(0.0)
        llm = OpenAICompletionLLM(
            base_url=self.cfg.base_url,
            api_key=self.cfg.api_key,
            model_name=self.cfg.model_name,
            timeout=self.cfg.request_timeout,
        )
        report({"loaded": 1, "total": 2})
        try:
            models = llm.available_models()
        except Exception as exc:
            raise GenerationUnavailableError(f"LLM-сервер {self.cfg.base_url} недоступен: {exc}") from exc
        if self.cfg.model_name not in models:
            raise GenerationUnavailableError(
                f"Модель {self.cfg.model_name} не обслуживается сервером {self.cfg.base_url}"
            )
        report({"loaded": 2, "total": 2})
        return llm
