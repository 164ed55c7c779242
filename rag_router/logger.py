#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Фабрика логгеров с единым форматом вывода.

Уровень берётся из RAG_LOG_LEVEL (по умолчанию INFO).
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _default_level() -> int:
    name = (os.getenv("RAG_LOG_LEVEL") or "INFO").upper()
    return getattr(logging, name, logging.INFO)


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Возвращает именованный логгер с консольным обработчиком.

    Повторный вызов с тем же именем не добавляет обработчики повторно.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        resolved = level if level is not None else _default_level()
        logger.setLevel(resolved)
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(resolved)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    return logger
