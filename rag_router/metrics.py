#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Метрики Prometheus для маршрутизатора запросов и жизненного цикла индексов."""

from prometheus_client import Counter, Histogram

QUERY_LATENCY = Histogram(
    "rag_router_query_seconds",
    "Полное время обработки запроса",
    ["scope"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)
QUERY_OUTCOMES = Counter(
    "rag_router_query_outcomes_total",
    "Исходы запросов",
    ["outcome"],
)
CACHE_LOOKUPS = Counter(
    "rag_router_scoped_cache_lookups_total",
    "Поиск временного индекса по хэшу набора файлов",
    ["result"],
)
INDEX_CREATIONS = Counter(
    "rag_router_index_creations_total",
    "Созданные индексы",
    ["kind"],
)
READINESS_VERDICTS = Counter(
    "rag_router_readiness_verdicts_total",
    "Итоги ожидания готовности индекса",
    ["state", "reason"],
)
MASTER_SYNC_FILES = Counter(
    "rag_router_master_sync_files_total",
    "Операции над файлами при синхронизации мастер-индекса",
    ["op", "result"],
)
