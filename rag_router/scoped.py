#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Кэш временных индексов под явно выбранные наборы документов.

Индекс адресуется содержимым: имя = префикс + хэш отсортированного набора file id.
Переиспользуется только индекс с точно таким же составом: лишние файлы
расширили бы поиск за пределы выбора пользователя, поэтому такой индекс
удаляется и строится заново.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional

from .config import IndexConfig
from .errors import IndexFailed, IndexMismatch, ProviderError, ProviderUnavailable, ResourceNotFound
from .logger import get_logger
from .metrics import CACHE_LOOKUPS, INDEX_CREATIONS
from .models import FileCounts, IndexHandle, IndexMember, IndexStatus
from .provider import VectorStoreProvider
from .readiness import ReadinessResult, ReadinessState, ReadinessWaiter

logger = get_logger(__name__)

_HASH_LENGTH = 16


def normalize_file_ids(file_ids: Iterable[str]) -> List[str]:
    """Отсортированный список уникальных непустых file id."""
    return sorted({f.strip() for f in file_ids if f and f.strip()})


def hash_file_ids(file_ids: Iterable[str]) -> str:
    """Стабильный хэш набора file id: не зависит от порядка и повторов."""
    joined = ",".join(normalize_file_ids(file_ids))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:_HASH_LENGTH]


class LookupOutcome(str, Enum):
    HIT = "hit"
    MISS = "miss"
    MISMATCH = "mismatch"


@dataclass
class CacheLookup:
    outcome: LookupOutcome
    handle: Optional[IndexHandle] = None
    members: List[IndexMember] = field(default_factory=list)
    discarded: List[str] = field(default_factory=list)


class ScopedIndexCache:
    """Поиск, проверка, переиспользование и пересоздание временных индексов."""

    def __init__(self, provider: VectorStoreProvider, waiter: ReadinessWaiter, cfg: IndexConfig) -> None:
        self._provider = provider
        self._waiter = waiter
        self._cfg = cfg

    def index_name(self, file_ids: Iterable[str]) -> str:
        return f"{self._cfg.scoped_prefix}{hash_file_ids(file_ids)}"

    async def lookup(self, file_ids: Iterable[str]) -> CacheLookup:
        """Ищет индекс по имени-хэшу и сверяет фактический состав с запрошенным.

        Надмножество и подмножество — промах; индекс с лишними файлами удаляется.
        """
        requested = set(normalize_file_ids(file_ids))
        name = self.index_name(requested)
        candidates = await self._provider.find_indexes(name)
        # дубликаты от параллельных запросов: сначала готовые, затем более новые
        candidates.sort(key=lambda h: (not h.is_ready, -(h.created_at or 0)))

        discarded: List[str] = []
        for cand in candidates:
            if cand.is_terminal_failure:
                logger.info(f"Пропускаем индекс {cand.id} ({cand.status.value})")
                continue
            try:
                members = await self._provider.list_members(cand.id)
            except ProviderUnavailable:
                raise
            except ProviderError:
                logger.warning(f"Не удалось проверить состав индекса {cand.id}", exc_info=True)
                continue

            present = {m.file_id for m in members}
            if present == requested:
                CACHE_LOOKUPS.labels(LookupOutcome.HIT.value).inc()
                logger.info(f"Найден индекс {cand.id} с точным составом: {len(requested)} файл(ов)")
                return CacheLookup(LookupOutcome.HIT, cand, members)

            extra = present - requested
            missing = requested - present
            if extra:
                logger.warning(
                    f"Индекс {cand.id} содержит лишние файлы {sorted(extra)} "
                    f"(не хватает {sorted(missing)}), удаляем"
                )
                await self._discard(cand.id)
                discarded.append(cand.id)
            else:
                logger.info(f"Индекс {cand.id} неполный, не хватает {sorted(missing)}")

        outcome = LookupOutcome.MISMATCH if discarded else LookupOutcome.MISS
        CACHE_LOOKUPS.labels(outcome.value).inc()
        return CacheLookup(outcome, discarded=discarded)

    async def get_or_create(self, file_ids: Iterable[str], *, deadline: Optional[float] = None) -> ReadinessResult:
        """Готовый индекс ровно под этот набор файлов: переиспользованный или новый."""
        requested = normalize_file_ids(file_ids)
        if not requested:
            raise ValueError("Пустой набор file id для временного индекса")

        found = await self.lookup(requested)
        if found.handle is not None:
            handle = found.handle
            counts = FileCounts.from_members(found.members)
            if handle.status is IndexStatus.READY and counts.completed > 0 and counts.in_progress == 0:
                status = IndexStatus.READY if counts.completed == counts.total else IndexStatus.PARTIALLY_READY
                logger.info(f"Переиспользуем индекс {handle.id}")
                return ReadinessResult(ReadinessState.READY, handle.with_status(status, counts), found.members, "reused")
            if counts.total and counts.completed == 0 and counts.in_progress == 0:
                logger.warning(f"Все файлы индекса {handle.id} с ошибкой, пересоздаём")
                await self._discard(handle.id)
            else:
                logger.info(f"Индекс {handle.id} ещё обрабатывается, ждём")
                return await self._waiter.wait_reused(handle, deadline=deadline)

        return await self._build(requested, deadline)

    async def use_dedicated(
        self,
        index_id: str,
        file_id: str,
        *,
        deadline: Optional[float] = None,
    ) -> Optional[ReadinessResult]:
        """Отдельный индекс документа, если он ровно из этого файла и готов; иначе None."""
        try:
            handle = await self._provider.retrieve_index(index_id)
            members = await self._provider.list_members(index_id)
        except ResourceNotFound:
            logger.warning(f"Отдельный индекс {index_id} не найден у провайдера")
            return None

        present = {m.file_id for m in members}
        if present != {file_id}:
            logger.warning(f"Отдельный индекс {index_id} содержит {sorted(present)}, ожидался {file_id}")
            return None
        if handle.is_terminal_failure:
            logger.warning(f"Отдельный индекс {index_id} в статусе {handle.status.value}")
            return None

        counts = FileCounts.from_members(members)
        if handle.status is IndexStatus.READY and counts.completed == counts.total:
            return ReadinessResult(ReadinessState.READY, handle.with_status(IndexStatus.READY, counts), members, "dedicated")

        try:
            result = await self._waiter.wait_reused(handle, deadline=deadline)
        except IndexFailed:
            return None
        return result if result.usable else None

    async def _build(self, requested: List[str], deadline: Optional[float]) -> ReadinessResult:
        name = self.index_name(requested)
        wanted = set(requested)
        for attempt in range(self._cfg.max_rebuilds + 1):
            logger.info(f"Создаём индекс {name} для {len(requested)} файл(ов), попытка {attempt + 1}")
            handle = await self._provider.create_index(name, requested, self._cfg.scoped_expiry_days)
            INDEX_CREATIONS.labels("scoped").inc()

            result = await self._waiter.wait_created(handle, deadline=deadline)
            if not result.usable:
                return result

            members = result.members or await self._provider.list_members(handle.id)
            present = {m.file_id for m in members}
            if present == wanted:
                result.members = members
                return result
            logger.warning(
                f"Новый индекс {handle.id}: состав {sorted(present)} не совпал с {sorted(wanted)}, пересоздаём"
            )
            await self._discard(handle.id)

        raise IndexMismatch(f"Не удалось собрать индекс {name} с точным составом", reason="membership_mismatch")

    async def _discard(self, index_id: str) -> None:
        try:
            await self._provider.delete_index(index_id)
        except ProviderError:
            # не удалённый индекс истечёт сам по неактивности
            logger.warning(f"Не удалось удалить индекс {index_id}", exc_info=True)
