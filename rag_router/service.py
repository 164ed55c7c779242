#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Входная точка запросов и сборка компонентов сервиса."""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from .config import LatencyConfig, Settings
from .errors import (
    GenerationFailed,
    IndexFailed,
    IndexNotReady,
    MalformedProviderResponse,
    NoActiveDocuments,
    ProviderError,
)
from .generator import Answer, AnswerGenerator
from .instructions import InstructionsCache
from .lifecycle import DocumentLifecycle
from .logger import get_logger
from .master import MasterIndexManager
from .metrics import QUERY_LATENCY, QUERY_OUTCOMES
from .models import ConversationTurn
from .provider import VectorStoreProvider, make_openai_client
from .readiness import Clock, ReadinessWaiter
from .router import QueryRouter, Route
from .scoped import ScopedIndexCache
from .storage import ConversationLog, InMemoryStore, SqliteStore

logger = get_logger(__name__)

MESSAGES = {
    "no_documents": "Сейчас нет активных документов под этот запрос. Обратитесь к администратору, чтобы активировать нужные файлы.",
    "not_ready": "Документы ещё обрабатываются. Попробуйте повторить запрос через минуту.",
    "failed": "Извините, при обработке запроса произошла ошибка. Попробуйте ещё раз.",
}


@dataclass
class QueryResult:
    answer_text: str
    tokens_used: int
    elapsed_ms: int
    resolved_scope_count: int
    conversation_id: Optional[str] = None
    scope: Optional[str] = None
    outcome: str = "answered"
    performance_target: str = "MISSED"


def classify_latency(elapsed_ms: int, cfg: LatencyConfig) -> str:
    """ACHIEVED / ACCEPTABLE / MISSED относительно целевых задержек."""
    if elapsed_ms <= cfg.achieved_ms:
        return "ACHIEVED"
    if elapsed_ms <= cfg.acceptable_ms:
        return "ACCEPTABLE"
    return "MISSED"


class QueryService:
    """submit_query: маршрутизация, генерация и обязательная запись диалога.

    Ошибки маршрутизации и генерации превращаются в ответ-заглушку; реплика
    пользователя и реплика ассистента записываются в любом случае.
    """

    def __init__(
        self,
        router: QueryRouter,
        generator: AnswerGenerator,
        conversations: ConversationLog,
        latency: LatencyConfig,
        clock: Optional[Clock] = None,
    ) -> None:
        self._router = router
        self._generator = generator
        self._conversations = conversations
        self._latency = latency
        self._clock = clock or Clock()

    async def submit_query(
        self,
        text: str,
        explicit_document_ids: Optional[Sequence[str]] = None,
        conversation_id: Optional[str] = None,
        history: Sequence[ConversationTurn] = (),
        user_id: Optional[str] = None,
    ) -> QueryResult:
        started = self._clock.now()
        deadline = started + self._latency.request_deadline_s
        route: Optional[Route] = None
        answer: Optional[Answer] = None
        outcome = "answered"

        try:
            route = await self._router.resolve(explicit_document_ids, deadline=deadline)
            answer = await self._generator.generate(text, route.handles, history, user_id=user_id)
        except NoActiveDocuments as exc:
            outcome = "no_documents"
            logger.info(f"Запрос без активных документов: {exc}")
        except IndexNotReady as exc:
            outcome = "not_ready"
            logger.warning(f"Индекс не готов: {exc}")
        except (IndexFailed, GenerationFailed, MalformedProviderResponse, ProviderError) as exc:
            outcome = "failed"
            logger.error(f"Запрос не выполнен: {exc}", exc_info=True)
        except Exception:
            # реплики сохраняются при любом сбое
            outcome = "failed"
            logger.exception("Непредвиденная ошибка при обработке запроса")

        elapsed_ms = int((self._clock.now() - started) * 1000)
        if answer is None:
            answer = Answer(MESSAGES[outcome], 0, elapsed_ms, grounded=False)
            route = None
        scope_count = len(route.handles) if route else 0
        scope = route.scope.value if route else None

        conversation_id = await self._persist(text, answer, conversation_id, user_id)

        QUERY_OUTCOMES.labels(outcome).inc()
        QUERY_LATENCY.labels(scope or "none").observe(elapsed_ms / 1000.0)
        target = classify_latency(elapsed_ms, self._latency)
        logger.info(f"Запрос обработан за {elapsed_ms}ms ({target}): {outcome}, индексов {scope_count}")
        return QueryResult(
            answer_text=answer.content,
            tokens_used=answer.tokens_used,
            elapsed_ms=elapsed_ms,
            resolved_scope_count=scope_count,
            conversation_id=conversation_id,
            scope=scope,
            outcome=outcome,
            performance_target=target,
        )

    async def _persist(
        self,
        text: str,
        answer: Answer,
        conversation_id: Optional[str],
        user_id: Optional[str],
    ) -> Optional[str]:
        if not conversation_id:
            try:
                conversation_id = await self._conversations.create_conversation(
                    user_id, f"Чат {time.strftime('%d.%m.%Y')}"
                )
            except Exception:
                # реплики всё равно пишем, без привязки к диалогу
                logger.exception("Не удалось создать диалог")

        turns = (
            ConversationTurn("user", text, 0, 0, conversation_id, user_id),
            ConversationTurn("assistant", answer.content, answer.tokens_used, answer.elapsed_ms, conversation_id, user_id),
        )
        for turn in turns:
            try:
                await self._conversations.append(turn)
            except Exception:
                logger.exception(f"Не удалось сохранить реплику {turn.role}")
        return conversation_id

    async def conversation_history(self, conversation_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Реплики диалога и сводная статистика по нему."""
        turns = await self._conversations.list_turns(conversation_id, user_id)
        assistant = [t for t in turns if t.role == "assistant"]
        avg_ms = sum(t.elapsed_ms for t in assistant) / len(assistant) if assistant else 0.0
        if avg_ms <= 100:
            rating = "EXCELLENT"
        elif avg_ms <= 500:
            rating = "GOOD"
        else:
            rating = "NEEDS_IMPROVEMENT"
        return {
            "messages": [{"role": t.role, "content": t.content} for t in turns],
            "stats": {
                "total_messages": len(turns),
                "avg_response_time_ms": round(avg_ms),
                "total_tokens_used": sum(t.tokens_used for t in turns),
                "performance_rating": rating,
            },
        }


@dataclass
class Services:
    """Все компоненты сервиса, созданные один раз при старте."""
    settings: Settings
    provider: VectorStoreProvider
    store: Any
    master: MasterIndexManager
    waiter: ReadinessWaiter
    cache: ScopedIndexCache
    router: QueryRouter
    instructions: InstructionsCache
    generator: AnswerGenerator
    lifecycle: DocumentLifecycle
    queries: QueryService


def build_services(
    settings: Settings,
    provider: Optional[VectorStoreProvider] = None,
    store: Any = None,
    clock: Optional[Clock] = None,
) -> Services:
    """Собирает граф компонентов; provider/store/clock можно подменить."""
    clock = clock or Clock()
    if provider is None:
        provider = VectorStoreProvider(make_openai_client(settings.provider))
    if store is None:
        store = SqliteStore(settings.storage.sqlite_path) if settings.storage.sqlite_path else InMemoryStore()

    master = MasterIndexManager(provider, settings.index)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)
    cache = ScopedIndexCache(provider, waiter, settings.index)
    router = QueryRouter(store, master, cache, waiter)
    instructions = InstructionsCache(store, settings.generation.instructions_ttl_s, clock)
    generator = AnswerGenerator(provider, settings.generation, instructions, clock)
    lifecycle = DocumentLifecycle(store, master, provider, settings.index)
    queries = QueryService(router, generator, store, settings.latency, clock)
    return Services(
        settings=settings,
        provider=provider,
        store=store,
        master=master,
        waiter=waiter,
        cache=cache,
        router=router,
        instructions=instructions,
        generator=generator,
        lifecycle=lifecycle,
        queries=queries,
    )
