#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Генерация ответа по найденным индексам (grounded) или без них (fallback)."""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .config import GenerationConfig
from .errors import GenerationFailed
from .instructions import InstructionsCache
from .logger import get_logger
from .models import ConversationTurn, IndexHandle
from .provider import VectorStoreProvider
from .readiness import Clock
from .responses import parse_response

logger = get_logger(__name__)

_PENDING_STATUSES = ("queued", "in_progress")


@dataclass
class Answer:
    content: str
    tokens_used: int
    elapsed_ms: int
    grounded: bool
    response_id: Optional[str] = None


class AnswerGenerator:
    """Строит сообщения и вызывает модель провайдера.

    - без индексов: обычный chat completion, поиск не вызывается
    - с индексами: Responses API с file_search, опрос до терминального статуса
    """

    def __init__(
        self,
        provider: VectorStoreProvider,
        cfg: GenerationConfig,
        instructions: InstructionsCache,
        clock: Optional[Clock] = None,
    ) -> None:
        self._provider = provider
        self._cfg = cfg
        self._instructions = instructions
        self._clock = clock or Clock()

    def build_messages(
        self,
        query: str,
        history: Sequence[ConversationTurn],
        system_prompt: str,
    ) -> List[Dict[str, str]]:
        """system + последние history_window реплик + текущий вопрос."""
        messages = [{"role": "system", "content": system_prompt}]
        window = list(history)[-self._cfg.history_window:] if self._cfg.history_window > 0 else []
        for turn in window:
            if turn.role in ("user", "assistant") and turn.content:
                messages.append({"role": turn.role, "content": turn.content})
        messages.append({"role": "user", "content": query})
        return messages

    async def generate(
        self,
        query: str,
        handles: Sequence[IndexHandle],
        history: Sequence[ConversationTurn] = (),
        user_id: Optional[str] = None,
    ) -> Answer:
        started = self._clock.now()
        override = await self._instructions.get()
        if not handles:
            return await self._generate_plain(query, history, override, started, user_id)
        return await self._generate_grounded(query, handles, history, override, started, user_id)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock.now() - started) * 1000)

    async def _generate_plain(
        self,
        query: str,
        history: Sequence[ConversationTurn],
        override: Optional[str],
        started: float,
        user_id: Optional[str] = None,
    ) -> Answer:
        messages = self.build_messages(query, history, override or self._cfg.fallback_prompt)
        text, tokens = await self._provider.chat_completion(
            model=self._cfg.model_name,
            messages=messages,
            temperature=self._cfg.fallback_temperature,
            max_tokens=self._cfg.max_output_tokens,
            user_id=user_id,
        )
        elapsed = self._elapsed_ms(started)
        logger.info(f"Ответ без поиска за {elapsed}ms, токенов {tokens}")
        return Answer(text or self._cfg.fallback_answer, tokens, elapsed, grounded=False)

    async def _generate_grounded(
        self,
        query: str,
        handles: Sequence[IndexHandle],
        history: Sequence[ConversationTurn],
        override: Optional[str],
        started: float,
        user_id: Optional[str] = None,
    ) -> Answer:
        index_ids = [h.id for h in handles]
        messages = self.build_messages(query, history, override or self._cfg.grounded_prompt)
        logger.info(f"Поиск по индексам {index_ids}: {len(messages)} сообщений")

        raw = await self._provider.create_response(
            model=self._cfg.model_name,
            messages=messages,
            index_ids=index_ids,
            temperature=self._cfg.grounded_temperature,
            max_output_tokens=self._cfg.max_output_tokens,
            user_id=user_id,
        )
        response_id = raw.get("id")
        attempts = 0
        while raw.get("status") in _PENDING_STATUSES and attempts < self._cfg.max_poll_attempts:
            await self._clock.sleep(self._cfg.poll_interval_s)
            raw = await self._provider.retrieve_response(response_id)
            attempts += 1
            if attempts % 5 == 0:
                logger.info(f"Опрос генерации {response_id}: попытка {attempts}, статус {raw.get('status')}")

        parsed = parse_response(raw, strict=self._cfg.strict_parsing)
        if parsed.status != "completed":
            detail = parsed.error.message if parsed.error else ""
            logger.error(f"Генерация {response_id} завершилась со статусом {parsed.status} {detail}".rstrip())
            raise GenerationFailed(f"Запрос не выполнен, статус: {parsed.status}", status=str(parsed.status))

        for call in parsed.search_calls:
            logger.debug(f"file_search {call.status}: запросы {call.queries}, результатов {len(call.results or [])}")

        text = parsed.first_text()
        if text is None:
            logger.warning(f"В ответе {response_id} нет текстового фрагмента, используем заглушку")
            text = self._cfg.fallback_answer

        elapsed = self._elapsed_ms(started)
        logger.info(f"Ответ с поиском за {elapsed}ms по {len(index_ids)} индекс(ам), токенов {parsed.total_tokens}")
        return Answer(text, parsed.total_tokens, elapsed, grounded=True, response_id=response_id)
