#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Мастер-индекс: один долгоживущий индекс со всеми активными документами."""

import asyncio
from typing import Iterable, List, Optional, Tuple

from .config import IndexConfig
from .errors import ResourceNotFound
from .logger import get_logger
from .metrics import INDEX_CREATIONS, MASTER_SYNC_FILES
from .models import IndexHandle, IndexMember, SyncResult
from .provider import VectorStoreProvider

logger = get_logger(__name__)


class MasterIndexManager:
    """Владеет мастер-индексом и держит его дескриптор в кэше экземпляра.

    Создаётся один раз при старте сервиса и передаётся в обработчики явно.
    Синхронизация инкрементальная: добавляются/удаляются только разницы.
    """

    def __init__(self, provider: VectorStoreProvider, cfg: IndexConfig) -> None:
        self._provider = provider
        self._cfg = cfg
        self._handle: Optional[IndexHandle] = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._cfg.master_index_name

    @property
    def cached_handle(self) -> Optional[IndexHandle]:
        return self._handle

    def invalidate(self) -> None:
        self._handle = None

    async def get_or_create(self) -> IndexHandle:
        """Находит мастер-индекс по имени или создаёт его. Идемпотентно."""
        if self._handle is not None:
            return self._handle
        async with self._lock:
            if self._handle is not None:
                return self._handle
            existing = await self._provider.find_indexes(self.name)
            if existing:
                # при гонке создания берём самый старый, остальные истекут сами
                existing.sort(key=lambda h: h.created_at or 0)
                self._handle = existing[0]
                logger.info(f"Найден мастер-индекс {self._handle.id}")
                if len(existing) > 1:
                    logger.warning(f"Найдено {len(existing)} мастер-индексов с именем {self.name}")
            else:
                self._handle = await self._provider.create_index(self.name, [], self._cfg.master_expiry_days)
                INDEX_CREATIONS.labels("master").inc()
                logger.info(f"Создан мастер-индекс {self._handle.id}")
            return self._handle

    async def refresh(self) -> IndexHandle:
        """Перечитывает статус мастер-индекса; пропавший у провайдера создаётся заново."""
        handle = await self.get_or_create()
        try:
            self._handle = await self._provider.retrieve_index(handle.id)
        except ResourceNotFound:
            logger.warning(f"Мастер-индекс {handle.id} не найден у провайдера, создаём заново")
            self.invalidate()
            return await self.get_or_create()
        return self._handle

    async def status(self) -> Tuple[IndexHandle, List[IndexMember]]:
        """Актуальный дескриптор и состав мастер-индекса (для админки)."""
        handle = await self.refresh()
        return handle, await self._provider.list_members(handle.id)

    async def add(self, file_id: str) -> IndexMember:
        """Добавляет файл в мастер-индекс, если его там ещё нет."""
        handle = await self.get_or_create()
        for member in await self._provider.list_members(handle.id):
            if member.file_id == file_id:
                logger.info(f"Файл {file_id} уже в мастер-индексе")
                return member
        member = await self._provider.add_member(handle.id, file_id)
        logger.info(f"Файл {file_id} добавлен в мастер-индекс {handle.id}")
        return member

    async def remove(self, file_id: str) -> bool:
        """Убирает файл из мастер-индекса; отсутствующий файл не ошибка (False)."""
        handle = await self.get_or_create()
        try:
            deleted = await self._provider.remove_member(handle.id, file_id)
        except ResourceNotFound:
            logger.info(f"Файла {file_id} нет в мастер-индексе")
            return False
        logger.info(f"Файл {file_id} удалён из мастер-индекса {handle.id}")
        return deleted

    async def sync(self, active_file_ids: Iterable[str]) -> SyncResult:
        """Приводит состав мастер-индекса к набору активных файлов.

        Операции по файлам идут параллельно; ошибка одного файла не прерывает пакет.
        """
        handle = await self.get_or_create()
        active = {f for f in active_file_ids if f}
        current = {m.file_id for m in await self._provider.list_members(handle.id)}
        to_add = sorted(active - current)
        to_remove = sorted(current - active)
        logger.info(f"Синхронизация мастер-индекса: +{len(to_add)} / -{len(to_remove)}")

        ops: List[Tuple[str, str]] = [("add", f) for f in to_add] + [("remove", f) for f in to_remove]
        results = await asyncio.gather(
            *(self._apply(handle.id, op, file_id) for op, file_id in ops),
            return_exceptions=True,
        )

        result = SyncResult(index_id=handle.id)
        for (op, file_id), outcome in zip(ops, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Синхронизация: {op} {file_id} не удалось: {outcome}")
                MASTER_SYNC_FILES.labels(op, "error").inc()
                result.failed += 1
                result.failed_file_ids.append(file_id)
                continue
            MASTER_SYNC_FILES.labels(op, "ok").inc()
            if op == "add":
                result.added += 1
            else:
                result.removed += 1
        logger.info(f"Синхронизация завершена: добавлено {result.added}, удалено {result.removed}, ошибок {result.failed}")
        return result

    async def _apply(self, index_id: str, op: str, file_id: str) -> None:
        if op == "add":
            await self._provider.add_member(index_id, file_id)
        else:
            try:
                await self._provider.remove_member(index_id, file_id)
            except ResourceNotFound:
                pass
