#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Переходы документа: активация, деактивация, полное удаление.

Мастер-индекс обновляется синхронно в рамках перехода. Сбои мастер-индекса
и отдельного (legacy) индекса логируются и не отменяют сам переход.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .config import IndexConfig
from .errors import DocumentNotFound, DocumentNotUploaded, ProviderError
from .logger import get_logger
from .master import MasterIndexManager
from .metrics import INDEX_CREATIONS
from .models import Document, SyncResult
from .provider import VectorStoreProvider
from .readiness import classify_health
from .storage import DocumentRegistry

logger = get_logger(__name__)


@dataclass
class TransitionResult:
    document: Document
    master_synced: bool
    warnings: List[str] = field(default_factory=list)


@dataclass
class DeletionStep:
    step: str
    success: bool
    error: Optional[str] = None


class DocumentLifecycle:
    def __init__(
        self,
        registry: DocumentRegistry,
        master: MasterIndexManager,
        provider: VectorStoreProvider,
        cfg: IndexConfig,
    ) -> None:
        self._registry = registry
        self._master = master
        self._provider = provider
        self._cfg = cfg

    async def _load(self, document_id: str) -> Document:
        doc = await self._registry.get(document_id)
        if doc is None:
            raise DocumentNotFound(f"Документ {document_id} не найден")
        return doc

    async def activate(self, document_id: str) -> TransitionResult:
        """Добавляет файл в мастер-индекс и помечает документ активным."""
        doc = await self._load(document_id)
        if not doc.provider_file_id:
            raise DocumentNotUploaded(f"Документ {document_id} ещё не загружен провайдеру")

        warnings: List[str] = []
        master_synced = True
        try:
            await self._master.add(doc.provider_file_id)
        except ProviderError as exc:
            master_synced = False
            warnings.append(f"master: {exc}")
            logger.warning(f"Документ {doc.id}: не удалось добавить в мастер-индекс", exc_info=True)

        dedicated_index_id = doc.dedicated_index_id
        if self._cfg.legacy_dedicated_indexes and not dedicated_index_id:
            try:
                handle = await self._provider.create_index(
                    f"{self._cfg.dedicated_prefix}{doc.name}",
                    [doc.provider_file_id],
                    self._cfg.dedicated_expiry_days,
                )
                INDEX_CREATIONS.labels("dedicated").inc()
                dedicated_index_id = handle.id
            except ProviderError as exc:
                warnings.append(f"dedicated: {exc}")
                logger.warning(f"Документ {doc.id}: не удалось создать отдельный индекс", exc_info=True)

        updated = replace(doc, is_active=True, dedicated_index_id=dedicated_index_id)
        await self._registry.save(updated)
        logger.info(f"Документ {doc.id} активирован (мастер-индекс: {'да' if master_synced else 'нет'})")
        return TransitionResult(updated, master_synced, warnings)

    async def deactivate(self, document_id: str) -> TransitionResult:
        """Убирает файл из мастер-индекса; отдельный индекс сохраняется для повторной активации."""
        doc = await self._load(document_id)
        warnings: List[str] = []
        master_synced = True
        if doc.provider_file_id:
            try:
                await self._master.remove(doc.provider_file_id)
            except ProviderError as exc:
                master_synced = False
                warnings.append(f"master: {exc}")
                logger.warning(f"Документ {doc.id}: не удалось убрать из мастер-индекса", exc_info=True)

        updated = replace(doc, is_active=False)
        await self._registry.save(updated)
        logger.info(f"Документ {doc.id} деактивирован")
        return TransitionResult(updated, master_synced, warnings)

    async def delete(self, document_id: str) -> List[DeletionStep]:
        """Удаляет документ отовсюду: мастер-индекс, отдельный индекс, файл, запись."""
        doc = await self._load(document_id)
        steps: List[DeletionStep] = []

        async def run(step: str, coro: Any) -> None:
            try:
                await coro
                steps.append(DeletionStep(step, True))
            except ProviderError as exc:
                logger.warning(f"Удаление {doc.id}: шаг {step} не удался: {exc}")
                steps.append(DeletionStep(step, False, str(exc)))

        if doc.provider_file_id:
            await run("master_index", self._master.remove(doc.provider_file_id))
        if doc.dedicated_index_id:
            await run("dedicated_index", self._provider.delete_index(doc.dedicated_index_id))
        if doc.provider_file_id:
            await run("provider_file", self._provider.delete_file(doc.provider_file_id))

        deleted = await self._registry.delete(doc.id)
        steps.append(DeletionStep("registry", deleted))
        return steps

    async def sync_master(self) -> SyncResult:
        """Ручная синхронизация мастер-индекса с активными документами."""
        active = await self._registry.list_active()
        return await self._master.sync([d.provider_file_id for d in active if d.provider_file_id])

    async def master_status(self) -> Dict[str, Any]:
        handle, members = await self._master.status()
        docs = await self._registry.list_all()
        with_files = [d for d in docs if d.provider_file_id]
        return {
            "master_index": handle.as_dict(),
            "members": [{"file_id": m.file_id, "status": m.status.value} for m in members],
            "documents": {
                "active_count": sum(1 for d in with_files if d.is_active),
                "total_count": len(with_files),
            },
        }

    async def health_report(self) -> Dict[str, Any]:
        """Состояние отдельных индексов активных документов."""
        docs = [d for d in await self._registry.list_active() if d.dedicated_index_id]
        results = await asyncio.gather(*(self._check(d) for d in docs), return_exceptions=True)

        entries: List[Dict[str, Any]] = []
        for doc, outcome in zip(docs, results):
            if isinstance(outcome, BaseException):
                logger.warning(f"Проверка индекса {doc.dedicated_index_id} не удалась: {outcome}")
                entries.append({"document_id": doc.id, "index_id": doc.dedicated_index_id,
                                "health_status": "unhealthy", "error": str(outcome)})
            else:
                entries.append(outcome)

        summary = {"total": len(entries)}
        for status in ("healthy", "partially_healthy", "unhealthy"):
            summary[status] = sum(1 for e in entries if e["health_status"] == status)
        return {"summary": summary, "indexes": entries}

    async def _check(self, doc: Document) -> Dict[str, Any]:
        handle = await self._provider.retrieve_index(doc.dedicated_index_id)
        members = await self._provider.list_members(handle.id)
        file_status = await self._provider.file_status(doc.provider_file_id) if doc.provider_file_id else None
        return {
            "document_id": doc.id,
            "file_status": file_status,
            "index": handle.as_dict(),
            "members": [{"file_id": m.file_id, "status": m.status.value, "last_error": m.last_error} for m in members],
            "health_status": classify_health(handle, members),
        }
