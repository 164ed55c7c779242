#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Модели данных: документы, индексы, участники индексов, реплики диалога."""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class IndexStatus(str, Enum):
    CREATING = "creating"
    PROCESSING = "processing"
    READY = "ready"
    PARTIALLY_READY = "partially_ready"
    FAILED = "failed"
    EXPIRED = "expired"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "IndexStatus":
        """Сопоставляет статус vector store провайдера со статусом индекса."""
        mapping = {
            "in_progress": cls.PROCESSING,
            "completed": cls.READY,
            "expired": cls.EXPIRED,
            "failed": cls.FAILED,
        }
        return mapping.get(raw or "", cls.PROCESSING)


class MemberStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "MemberStatus":
        try:
            return cls(raw)
        except ValueError:
            return cls.IN_PROGRESS


@dataclass
class FileCounts:
    total: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0
    cancelled: int = 0

    @classmethod
    def from_members(cls, members: Iterable["IndexMember"]) -> "FileCounts":
        counts = cls()
        for m in members:
            counts.total += 1
            if m.status is MemberStatus.COMPLETED:
                counts.completed += 1
            elif m.status is MemberStatus.FAILED:
                counts.failed += 1
            elif m.status is MemberStatus.CANCELLED:
                counts.cancelled += 1
            else:
                counts.in_progress += 1
        return counts

    def as_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "in_progress": self.in_progress,
            "cancelled": self.cancelled,
        }


@dataclass
class IndexHandle:
    """Дескриптор индекса провайдера.

    - id / name: идентификатор и имя, назначенные при создании
    - status: статус жизненного цикла (см. IndexStatus)
    - counts: агрегированные счётчики участников
    - expires_after_days: политика истечения по неактивности
    """
    id: str
    name: str
    status: IndexStatus = IndexStatus.PROCESSING
    counts: FileCounts = field(default_factory=FileCounts)
    expires_after_days: Optional[int] = None
    expires_at: Optional[int] = None
    created_at: Optional[int] = None

    @property
    def is_ready(self) -> bool:
        return self.status in (IndexStatus.READY, IndexStatus.PARTIALLY_READY) and self.counts.completed > 0

    @property
    def is_terminal_failure(self) -> bool:
        return self.status in (IndexStatus.FAILED, IndexStatus.EXPIRED)

    def with_status(self, status: IndexStatus, counts: Optional[FileCounts] = None) -> "IndexHandle":
        return replace(self, status=status, counts=counts if counts is not None else self.counts)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "file_counts": self.counts.as_dict(),
            "expires_after_days": self.expires_after_days,
            "expires_at": self.expires_at,
        }


@dataclass
class IndexMember:
    """Документ внутри индекса и статус его обработки провайдером."""
    file_id: str
    index_id: str
    status: MemberStatus = MemberStatus.IN_PROGRESS
    last_error: Optional[str] = None


@dataclass
class Document:
    """Запись реестра документов (читается ядром, меняется приложением)."""
    id: str
    name: str
    provider_file_id: Optional[str] = None
    is_active: bool = False
    dedicated_index_id: Optional[str] = None


@dataclass
class ConversationTurn:
    role: str
    content: str
    tokens_used: int = 0
    elapsed_ms: int = 0
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)


@dataclass
class SyncResult:
    """Итог синхронизации мастер-индекса с активным набором документов."""
    index_id: str
    added: int = 0
    removed: int = 0
    failed: int = 0
    failed_file_ids: List[str] = field(default_factory=list)
