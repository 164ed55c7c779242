#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Ожидание готовности индекса провайдера.

Конечный автомат pending -> polling -> ready | degraded | failed:
- failed/expired: исключение IndexFailed сразу, без повторов
- агрегат completed, но список участников пуст: продолжаем опрос
- участники ещё обрабатываются: продолжаем опрос
- все участники completed: ready; часть failed: ready (partially_ready)
- все участники failed: degraded, решение остаётся за вызывающим
- бюджет исчерпан: degraded с последним наблюдённым статусом
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .config import ReadinessConfig
from .errors import IndexFailed, ProviderError, ProviderUnavailable
from .logger import get_logger
from .metrics import READINESS_VERDICTS
from .models import FileCounts, IndexHandle, IndexMember, IndexStatus, MemberStatus
from .provider import VectorStoreProvider

logger = get_logger(__name__)


class Clock:
    """Источник времени и ожидания; в тестах подменяется виртуальными часами."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ReadinessState(str, Enum):
    PENDING = "pending"
    POLLING = "polling"
    READY = "ready"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class ReadinessResult:
    state: ReadinessState
    handle: IndexHandle
    members: List[IndexMember] = field(default_factory=list)
    reason: str = ""
    polls: int = 0
    waited_s: float = 0.0

    @property
    def usable(self) -> bool:
        return self.state is ReadinessState.READY


_Verdict = Tuple[ReadinessState, str, IndexHandle, List[IndexMember]]


class ReadinessWaiter:
    """Опрашивает индекс с фиксированным интервалом в пределах бюджета ожидания."""

    def __init__(self, provider: VectorStoreProvider, cfg: ReadinessConfig, clock: Optional[Clock] = None) -> None:
        self._provider = provider
        self._cfg = cfg
        self._clock = clock or Clock()

    async def wait_reused(
        self,
        handle: IndexHandle,
        *,
        accept_partial: bool = False,
        deadline: Optional[float] = None,
    ) -> ReadinessResult:
        """Ожидание для существующего (переиспользуемого или отдельного) индекса."""
        return await self.wait(
            handle,
            max_wait_s=self._cfg.reused_max_wait_s,
            newly_created=False,
            accept_partial=accept_partial,
            deadline=deadline,
        )

    async def wait_created(self, handle: IndexHandle, *, deadline: Optional[float] = None) -> ReadinessResult:
        """Ожидание для только что созданного индекса (с паузой после готовности)."""
        return await self.wait(
            handle,
            max_wait_s=self._cfg.created_max_wait_s,
            newly_created=True,
            deadline=deadline,
        )

    async def wait(
        self,
        handle: IndexHandle,
        *,
        max_wait_s: float,
        newly_created: bool = False,
        accept_partial: bool = False,
        deadline: Optional[float] = None,
    ) -> ReadinessResult:
        started = self._clock.now()
        budget = max_wait_s
        if deadline is not None:
            budget = max(0.0, min(budget, deadline - started))

        state = ReadinessState.PENDING
        last = handle
        polls = 0
        logger.debug(f"Ожидание индекса {handle.id}: state={state.value}, budget={budget:.1f}s")

        while True:
            state = ReadinessState.POLLING
            last = await self._provider.retrieve_index(handle.id)
            polls += 1

            if last.is_terminal_failure:
                READINESS_VERDICTS.labels(ReadinessState.FAILED.value, last.status.value).inc()
                logger.error(f"Индекс {last.id} в статусе {last.status.value}")
                raise IndexFailed(f"Индекс {last.id}: {last.status.value}", index_id=last.id, status=last.status.value)

            verdict = await self._judge(last, accept_partial)
            if verdict is not None:
                state, reason, last, members = verdict
                if state is ReadinessState.READY and newly_created and self._cfg.settle_delay_s > 0:
                    # "ready" у провайдера ещё не гарантирует, что поиск уже видит файлы
                    await self._clock.sleep(self._cfg.settle_delay_s)
                waited = self._clock.now() - started
                READINESS_VERDICTS.labels(state.value, reason).inc()
                if state is ReadinessState.READY:
                    logger.info(
                        f"Индекс {last.id} готов ({reason}): "
                        f"{last.counts.completed}/{last.counts.total} файлов, {waited:.1f}s, опросов {polls}"
                    )
                else:
                    logger.warning(f"Индекс {last.id} деградирован ({reason}): все {last.counts.total} файлов с ошибкой")
                return ReadinessResult(state, last, members, reason, polls, waited)

            remaining = budget - (self._clock.now() - started)
            if remaining <= 0:
                state = ReadinessState.DEGRADED
                READINESS_VERDICTS.labels(state.value, "timeout").inc()
                logger.warning(
                    f"Таймаут ожидания индекса {last.id} ({budget:.1f}s), последний статус {last.status.value}"
                )
                return ReadinessResult(state, last, [], "timeout", polls, self._clock.now() - started)

            logger.debug(
                f"Индекс {last.id}: {last.status.value}, "
                f"{last.counts.completed}/{last.counts.total} готово, ждём"
            )
            await self._clock.sleep(min(self._cfg.poll_interval_s, remaining))

    async def _judge(self, handle: IndexHandle, accept_partial: bool) -> Optional[_Verdict]:
        aggregate_ready = handle.status is IndexStatus.READY
        partial_candidate = accept_partial and handle.counts.completed > 0
        if not aggregate_ready and not partial_candidate:
            return None
        try:
            members = await self._provider.list_members(handle.id)
        except ProviderUnavailable:
            raise
        except ProviderError:
            logger.warning(f"Не удалось получить участников индекса {handle.id}, используем агрегаты", exc_info=True)
            return self._judge_counts(handle, accept_partial)
        return self._judge_members(handle, members, accept_partial)

    @staticmethod
    def _judge_members(handle: IndexHandle, members: List[IndexMember], accept_partial: bool) -> Optional[_Verdict]:
        if not members:
            # агрегат уже completed, а поштучный статус ещё не виден
            return None
        counts = FileCounts.from_members(members)
        if counts.in_progress and not accept_partial:
            return None
        if counts.completed == counts.total:
            return ReadinessState.READY, "ready", handle.with_status(IndexStatus.READY, counts), members
        if counts.completed > 0:
            return ReadinessState.READY, "partial", handle.with_status(IndexStatus.PARTIALLY_READY, counts), members
        if counts.in_progress:
            return None
        return ReadinessState.DEGRADED, "all_members_failed", handle.with_status(handle.status, counts), members

    @staticmethod
    def _judge_counts(handle: IndexHandle, accept_partial: bool) -> Optional[_Verdict]:
        c = handle.counts
        if c.total == 0:
            return None
        if c.completed == c.total:
            return ReadinessState.READY, "ready", handle.with_status(IndexStatus.READY), []
        if c.in_progress and not accept_partial:
            return None
        if c.completed > 0:
            return ReadinessState.READY, "partial", handle.with_status(IndexStatus.PARTIALLY_READY), []
        if c.in_progress:
            return None
        return ReadinessState.DEGRADED, "all_members_failed", handle, []


def classify_health(handle: IndexHandle, members: List[IndexMember]) -> str:
    """Оценка здоровья индекса для админ-отчёта: healthy / partially_healthy / unhealthy."""
    if handle.is_terminal_failure:
        return "unhealthy"
    completed = sum(1 for m in members if m.status is MemberStatus.COMPLETED)
    failed = sum(1 for m in members if m.status is MemberStatus.FAILED)
    if handle.status in (IndexStatus.PROCESSING, IndexStatus.CREATING):
        return "partially_healthy" if completed else "unhealthy"
    if not members:
        return "unhealthy"
    if completed == len(members):
        return "healthy"
    if completed > 0 and failed < len(members):
        return "partially_healthy"
    return "unhealthy"
