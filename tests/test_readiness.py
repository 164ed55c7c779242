"""
Тесты ожидания готовности индекса (виртуальные часы, без реальных пауз).

Сценарии:
- Агрегат completed при пустом списке участников — опрос продолжается
- Исчерпанный бюджет — degraded с reason=timeout, без исключения
- Индекс failed — IndexFailed сразу
- Все участники с ошибкой — degraded, часть с ошибкой — ready (partial)

Запуск тестов:
  pytest -q tests/test_readiness.py
"""

import pytest

from rag_router.errors import IndexFailed, ProviderError
from rag_router.models import IndexHandle, IndexMember, IndexStatus, MemberStatus
from rag_router.readiness import ReadinessState, ReadinessWaiter, classify_health

from conftest import FakeProvider


@pytest.mark.asyncio
async def test_completed_without_members_keeps_polling(provider, settings, clock) -> None:
    provider.members_lag = 2
    handle = await provider.create_index("idx", ["f1"], 7)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    result = await waiter.wait_created(handle)

    assert result.state is ReadinessState.READY
    assert result.polls == 3
    assert clock.sleeps == [2.0, 2.0, settings.readiness.settle_delay_s]


@pytest.mark.asyncio
async def test_timeout_is_degraded_not_error(settings, clock) -> None:
    provider = FakeProvider(ready_after=1000)
    handle = await provider.create_index("idx", ["f1"], 7)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    result = await waiter.wait_reused(handle)

    assert result.state is ReadinessState.DEGRADED
    assert result.reason == "timeout"
    assert not result.usable
    assert result.waited_s == pytest.approx(settings.readiness.reused_max_wait_s)


@pytest.mark.asyncio
async def test_deadline_clamps_budget(settings, clock) -> None:
    provider = FakeProvider(ready_after=1000)
    handle = await provider.create_index("idx", ["f1"], 7)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    result = await waiter.wait_created(handle, deadline=clock.now() + 5.0)

    assert result.reason == "timeout"
    assert result.waited_s == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_failed_index_raises(provider, settings, clock) -> None:
    index_id = provider.seed_index("idx", ["f1"], status=IndexStatus.FAILED)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    with pytest.raises(IndexFailed) as exc_info:
        await waiter.wait_reused(IndexHandle(index_id, "idx"))
    assert exc_info.value.status == "failed"
    assert provider.count("retrieve_index") == 1


@pytest.mark.asyncio
async def test_all_members_failed_is_degraded(provider, settings, clock) -> None:
    provider.failing_files = {"f1"}
    handle = await provider.create_index("idx", ["f1"], 7)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    result = await waiter.wait_created(handle)

    assert result.state is ReadinessState.DEGRADED
    assert result.reason == "all_members_failed"
    # пауза после готовности не нужна для неготового индекса
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_some_members_failed_is_partial(provider, settings, clock) -> None:
    provider.failing_files = {"f2"}
    handle = await provider.create_index("idx", ["f1", "f2"], 7)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    result = await waiter.wait_created(handle)

    assert result.state is ReadinessState.READY
    assert result.reason == "partial"
    assert result.handle.status is IndexStatus.PARTIALLY_READY
    assert result.handle.counts.completed == 1


@pytest.mark.asyncio
async def test_accept_partial_does_not_wait_for_new_member(settings, clock) -> None:
    provider = FakeProvider(ready_after=5)
    index_id = provider.seed_index("master", ["f1"])
    await provider.add_member(index_id, "f2")
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    result = await waiter.wait_reused(IndexHandle(index_id, "master"), accept_partial=True)

    assert result.usable
    assert result.polls == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_member_listing_error_falls_back_to_counts(provider, settings, clock) -> None:
    index_id = provider.seed_index("idx", ["f1"])
    provider.errors["list_members"] = ProviderError("boom", operation="list_members", status_code=400)
    waiter = ReadinessWaiter(provider, settings.readiness, clock)

    result = await waiter.wait_reused(IndexHandle(index_id, "idx"))

    assert result.state is ReadinessState.READY
    assert result.members == []


def test_classify_health() -> None:
    ready = IndexHandle("vs_1", "idx", IndexStatus.READY)
    ok = IndexMember("f1", "vs_1", MemberStatus.COMPLETED)
    bad = IndexMember("f2", "vs_1", MemberStatus.FAILED)

    assert classify_health(ready, [ok]) == "healthy"
    assert classify_health(ready, [ok, bad]) == "partially_healthy"
    assert classify_health(ready, [bad]) == "unhealthy"
    assert classify_health(ready, []) == "unhealthy"
    assert classify_health(IndexHandle("vs_2", "idx", IndexStatus.EXPIRED), [ok]) == "unhealthy"
