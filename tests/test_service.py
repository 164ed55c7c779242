"""
Тесты submit_query: маршрутизация, генерация и обязательная запись диалога.

Сценарии:
- Полный путь: активация → запрос по двум документам → повтор без пересоздания →
  деактивация → запрос по мастер-индексу → мастер-индекс failed
- Явный пустой список документов — ноль токенов, ноль индексов, без вызовов провайдера
- Ошибка провайдера при генерации — ровно одна реплика пользователя и одна ассистента

Запуск тестов:
  pytest -q tests/test_service.py
"""

import sqlite3
from typing import Any

import pytest

from rag_router.errors import ProviderUnavailable
from rag_router.models import Document, IndexStatus
from rag_router.service import MESSAGES, build_services, classify_latency
from rag_router.config import LatencyConfig
from rag_router.storage import InMemoryStore

from conftest import FakeProvider


def _services(provider, store, settings, clock):
    return build_services(settings, provider=provider, store=store, clock=clock)


@pytest.mark.asyncio
async def test_end_to_end_flow(provider, settings, clock) -> None:
    store = InMemoryStore([Document("D1", "Регламент.pdf", "f-1"), Document("D2", "Инструкция.pdf", "f-2")])
    services = _services(provider, store, settings, clock)

    await services.lifecycle.activate("D1")
    master = await services.master.get_or_create()
    assert set(provider.indexes[master.id].members) == {"f-1"}
    await services.lifecycle.activate("D2")

    created_before = provider.count("create_index")
    first = await services.queries.submit_query("Что в регламенте?", explicit_document_ids=["D1", "D2"])
    assert first.outcome == "answered"
    assert first.scope == "scoped"
    assert first.resolved_scope_count == 1
    assert provider.count("create_index") == created_before + 1
    scoped_id = provider.calls[[op for op, _ in provider.calls].index("create_response")][1][0]
    assert set(provider.indexes[scoped_id].members) == {"f-1", "f-2"}
    sleeps_after_first = list(clock.sleeps)

    second = await services.queries.submit_query("А подробнее?", explicit_document_ids=["D2", "D1"])
    assert second.outcome == "answered"
    assert provider.count("create_index") == created_before + 1
    assert clock.sleeps == sleeps_after_first

    await services.lifecycle.deactivate("D2")
    assert set(provider.indexes[master.id].members) == {"f-1"}

    third = await services.queries.submit_query("Общий вопрос")
    assert third.scope == "master"
    last_search = [arg for op, arg in provider.calls if op == "create_response"][-1]
    assert last_search == [master.id]

    provider.indexes[master.id].status = IndexStatus.FAILED
    fourth = await services.queries.submit_query("Ещё вопрос")
    assert fourth.outcome == "failed"
    assert fourth.answer_text == MESSAGES["failed"]
    assert fourth.tokens_used == 0
    assert provider.count("create_response") == 3

    assistant = [t for t in store.turns if t.role == "assistant"]
    assert len(store.turns) == 8
    assert assistant[-1].content == MESSAGES["failed"]


@pytest.mark.asyncio
async def test_empty_explicit_ids_is_free(provider, store, settings, clock) -> None:
    services = _services(provider, store, settings, clock)

    result = await services.queries.submit_query("Вопрос", explicit_document_ids=[])

    assert result.tokens_used == 0
    assert result.resolved_scope_count == 0
    assert result.outcome == "no_documents"
    assert result.answer_text == MESSAGES["no_documents"]
    assert provider.calls == []
    assert [t.role for t in store.turns] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_provider_error_still_persists_both_turns(provider, store, settings, clock) -> None:
    provider.seed_index(settings.index.master_index_name, ["file-1", "file-2"])
    provider.errors["create_response"] = ProviderUnavailable("503", operation="create_response", status_code=503)
    services = _services(provider, store, settings, clock)

    result = await services.queries.submit_query("Вопрос", user_id="u-1")

    assert result.outcome == "failed"
    assert result.conversation_id is not None
    turns = store.turns
    assert [t.role for t in turns] == ["user", "assistant"]
    assert turns[0].content == "Вопрос"
    assert turns[1].content == MESSAGES["failed"]
    assert all(t.conversation_id == result.conversation_id for t in turns)
    assert all(t.user_id == "u-1" for t in turns)


@pytest.mark.asyncio
async def test_registry_error_still_persists_both_turns(provider, store, settings, clock) -> None:
    async def _locked(*args: Any, **kwargs: Any) -> None:
        raise sqlite3.OperationalError("database is locked")

    store.list_active = _locked  # type: ignore[method-assign]
    services = _services(provider, store, settings, clock)

    result = await services.queries.submit_query("Вопрос")

    assert result.outcome == "failed"
    assert result.answer_text == MESSAGES["failed"]
    assert [t.role for t in store.turns] == ["user", "assistant"]
    assert provider.calls == []


@pytest.mark.asyncio
async def test_blank_file_id_is_not_eligible(provider, settings, clock) -> None:
    store = InMemoryStore([Document("D1", "a.pdf", "  ", is_active=True)])
    services = _services(provider, store, settings, clock)

    result = await services.queries.submit_query("Вопрос", explicit_document_ids=["D1"])

    assert result.outcome == "no_documents"
    assert result.tokens_used == 0
    assert result.resolved_scope_count == 0
    assert [t.role for t in store.turns] == ["user", "assistant"]
    assert provider.count("create_index") == 0


@pytest.mark.asyncio
async def test_index_not_ready_message(store, settings, clock) -> None:
    provider = FakeProvider(ready_after=1000)
    services = _services(provider, store, settings, clock)

    result = await services.queries.submit_query("Вопрос", explicit_document_ids=["doc-1", "doc-2"])

    assert result.outcome == "not_ready"
    assert result.answer_text == MESSAGES["not_ready"]
    assert provider.count("create_response") == 0
    assert len(store.turns) == 2


@pytest.mark.asyncio
async def test_persistence_failure_does_not_break_answer(provider, store, settings, clock) -> None:
    provider.seed_index(settings.index.master_index_name, ["file-1", "file-2"])

    async def _broken(*args: Any, **kwargs: Any) -> None:
        raise RuntimeError("disk full")

    store.append = _broken  # type: ignore[method-assign]
    services = _services(provider, store, settings, clock)

    result = await services.queries.submit_query("Вопрос")

    assert result.outcome == "answered"
    assert result.answer_text == "Ответ по документам"


@pytest.mark.asyncio
async def test_user_id_forwarded_to_generation(provider, store, settings, clock) -> None:
    provider.seed_index(settings.index.master_index_name, ["file-1", "file-2"])
    services = _services(provider, store, settings, clock)

    result = await services.queries.submit_query("Вопрос", user_id="u-7")

    assert result.outcome == "answered"
    assert provider.user_ids == ["u-7"]


@pytest.mark.asyncio
async def test_conversation_history_stats(provider, store, settings, clock) -> None:
    provider.seed_index(settings.index.master_index_name, ["file-1", "file-2"])
    services = _services(provider, store, settings, clock)

    first = await services.queries.submit_query("Первый")
    await services.queries.submit_query("Второй", conversation_id=first.conversation_id)

    history = await services.queries.conversation_history(first.conversation_id)
    assert [m["role"] for m in history["messages"]] == ["user", "assistant", "user", "assistant"]
    assert history["stats"]["total_messages"] == 4
    assert history["stats"]["total_tokens_used"] == 84
    assert history["stats"]["performance_rating"] == "EXCELLENT"


def test_classify_latency() -> None:
    cfg = LatencyConfig(achieved_ms=50, acceptable_ms=100)
    assert classify_latency(10, cfg) == "ACHIEVED"
    assert classify_latency(80, cfg) == "ACCEPTABLE"
    assert classify_latency(101, cfg) == "MISSED"
