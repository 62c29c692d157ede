#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import logging
from dataclasses import dataclass
from typing import List

from llama_index.core.llms import ChatMessage, MessageRole

from .config import LLMConfig, SyntheticConfig
from .llm import strip_prompt_echo
from .loader import ModelLoader

logger = logging.getLogger(__name__)


@dataclass
class SyntheticResult:
    content: str
    topic: str


class SyntheticDataGenerator:
    """Генерация синтетических обучающих примеров по теме.

    Не трогает ни векторное хранилище, ни память диалога: только модель.
    """
    def __init__(self, loader: ModelLoader, cfg: SyntheticConfig, llm_cfg: LLMConfig) -> None:
        self._loader = loader
        self.cfg = cfg
        self._llm_cfg = llm_cfg

    def build_chat(self, topic: str) -> List[ChatMessage]:
        n = self.cfg.num_examples
        system = (
            "You are a helpful assistant that generates training data. "
            f"Generate {n} diverse training examples for the given topic in a clear, structured format. "
            "Each example should be informative and useful."
        )
        user = (
            f"Topic: {topic}\n\n"
            f"Generate {n} training examples covering different aspects of this topic. "
            "Format each example clearly with a question or instruction and a detailed response."
        )
        return [
            ChatMessage(role=MessageRole.SYSTEM, content=system),
            ChatMessage(role=MessageRole.USER, content=user),
        ]

    async def generate(self, topic: str) -> SyntheticResult:
        """Загружает модель при необходимости (не дольше load_timeout) и генерирует примеры."""
        topic = (topic or "").strip()
        if not topic:
            raise ValueError("Тема для синтетических данных не задана")
        llm = await self._loader.ensure_loaded(timeout=self._llm_cfg.load_timeout)
        prompt = llm.messages_to_prompt(self.build_chat(topic))
        logger.info("Генерация синтетических данных по теме %r", topic)
        resp = await llm.acomplete(prompt, formatted=True, **self.cfg.as_kwargs())
        return SyntheticResult(content=strip_prompt_echo(resp.text or "", prompt), topic=topic)
