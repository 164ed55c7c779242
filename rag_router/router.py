#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Выбор индекса(ов) под запрос: мастер, отдельный индекс документа или временный."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from .errors import IndexNotReady, NoActiveDocuments
from .logger import get_logger
from .master import MasterIndexManager
from .models import Document, IndexHandle
from .readiness import ReadinessResult, ReadinessWaiter
from .scoped import ScopedIndexCache
from .storage import DocumentRegistry

logger = get_logger(__name__)


class RouteScope(str, Enum):
    MASTER = "master"
    DEDICATED = "dedicated"
    SCOPED = "scoped"


@dataclass
class Route:
    scope: RouteScope
    handles: List[IndexHandle] = field(default_factory=list)
    document_count: int = 0


class QueryRouter:
    """Разрешает запрос в упорядоченный список готовых индексов.

    Синхронизация мастер-индекса здесь не запускается: она выполняется при
    активации/деактивации документов.
    """

    def __init__(
        self,
        registry: DocumentRegistry,
        master: MasterIndexManager,
        cache: ScopedIndexCache,
        waiter: ReadinessWaiter,
    ) -> None:
        self._registry = registry
        self._master = master
        self._cache = cache
        self._waiter = waiter

    async def resolve(
        self,
        explicit_document_ids: Optional[Sequence[str]] = None,
        *,
        deadline: Optional[float] = None,
    ) -> Route:
        if explicit_document_ids is not None:
            return await self._resolve_explicit(explicit_document_ids, deadline)
        return await self._resolve_master(deadline)

    async def _resolve_explicit(self, document_ids: Sequence[str], deadline: Optional[float]) -> Route:
        docs = await self._registry.get_many(list(document_ids)) if document_ids else []
        eligible: List[Document] = [
            d for d in docs if d.is_active and d.provider_file_id and d.provider_file_id.strip()
        ]
        if not eligible:
            raise NoActiveDocuments(f"Нет активных документов среди {list(document_ids)}")

        if len(eligible) == 1 and eligible[0].dedicated_index_id:
            doc = eligible[0]
            result = await self._cache.use_dedicated(doc.dedicated_index_id, doc.provider_file_id, deadline=deadline)
            if result is not None:
                logger.info(f"Документ {doc.id}: используем отдельный индекс {result.handle.id}")
                return Route(RouteScope.DEDICATED, [result.handle], 1)
            logger.info(f"Документ {doc.id}: отдельный индекс непригоден, строим временный")

        file_ids = [d.provider_file_id for d in eligible]
        result = await self._cache.get_or_create(file_ids, deadline=deadline)
        self._require_usable(result)
        return Route(RouteScope.SCOPED, [result.handle], len(eligible))

    async def _resolve_master(self, deadline: Optional[float]) -> Route:
        active = await self._registry.list_active()
        if not active:
            raise NoActiveDocuments("Нет активных документов")
        handle = await self._master.get_or_create()
        logger.info(f"Мастер-индекс {handle.id}: активных документов {len(active)}")
        result = await self._waiter.wait_reused(handle, accept_partial=True, deadline=deadline)
        self._require_usable(result)
        return Route(RouteScope.MASTER, [result.handle], len(active))

    @staticmethod
    def _require_usable(result: ReadinessResult) -> None:
        if not result.usable:
            raise IndexNotReady(
                f"Индекс {result.handle.id} не готов ({result.reason})",
                index_id=result.handle.id,
                reason=result.reason,
            )
