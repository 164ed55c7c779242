#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from typing import Optional

from .logger import get_logger
from .readiness import Clock
from .storage import SettingsStore

logger = get_logger(__name__)


class InstructionsCache:
    """Системные инструкции из хранилища с TTL.

    Ошибка чтения кэшируется как None на тот же TTL: генерация идёт со
    встроенным промптом, а хранилище не опрашивается на каждом запросе.
    """

    def __init__(self, store: SettingsStore, ttl_s: float = 60.0, clock: Optional[Clock] = None) -> None:
        self._store = store
        self._ttl_s = ttl_s
        self._clock = clock or Clock()
        self._text: Optional[str] = None
        self._fetched_at: Optional[float] = None

    async def get(self) -> Optional[str]:
        now = self._clock.now()
        if self._fetched_at is not None and now - self._fetched_at < self._ttl_s:
            return self._text
        try:
            text = await self._store.get_system_instructions()
        except Exception:
            logger.warning("Не удалось прочитать системные инструкции, используем встроенные", exc_info=True)
            text = None
        self._text = (text or "").strip() or None
        self._fetched_at = now
        return self._text

    def set(self, text: Optional[str]) -> None:
        """Обновляет кэш сразу после записи настроек администратором."""
        self._text = (text or "").strip() or None
        self._fetched_at = self._clock.now()

    def invalidate(self) -> None:
        self._fetched_at = None
