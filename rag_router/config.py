#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import os
from dataclasses import dataclass, field
from typing import Dict, Optional


DEFAULT_GROUNDED_PROMPT = (
    "Ты помощник, отвечающий строго по подключённым файлам. "
    "ВСЕГДА используй инструмент file_search перед ответом.\n"
    "- Ищи во всех доступных файлах, учитывай синонимы и близкие термины.\n"
    "- По возможности указывай файл-источник (без расширения).\n"
    "- Не смешивай данные из разных источников без пояснения.\n"
    "- Если после поиска ничего не найдено, так и скажи: "
    "\"Не нашёл информации о [тема] в предоставленных файлах\".\n"
    "- Отвечай в Markdown, кратко, на языке вопроса. Ничего не выдумывай."
)

DEFAULT_FALLBACK_PROMPT = (
    "Ты помощник, который отвечает в первую очередь по загруженным документам.\n"
    "- Если в документах недостаточно данных, прямо скажи об этом и предложи "
    "загрузить или активировать нужные документы.\n"
    "- Отвечай кратко и по делу, не выдумывай данные."
)


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


@dataclass
class ProviderConfig:
    """Параметры доступа к провайдеру (OpenAI-совместимый API).

    - api_key: ключ доступа
    - base_url: альтернативный базовый URL (прокси/шлюз), None — по умолчанию
    - timeout_s: таймаут одного HTTP-вызова
    - max_retries: встроенные ретраи клиента openai
    - default_headers: дополнительные заголовки (например, для шлюза аналитики)
    """
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout_s: float = 30.0
    max_retries: int = 2
    default_headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class IndexConfig:
    """Параметры жизненного цикла индексов (vector stores).

    - master_index_name: фиксированное имя мастер-индекса
    - master_expiry_days: срок жизни мастер-индекса после последней активности
    - scoped_prefix / scoped_expiry_days: имя и срок жизни временных индексов
    - dedicated_prefix: префикс имён индексов отдельных документов
    - legacy_dedicated_indexes: создавать ли отдельный индекс при активации
    - max_rebuilds: сколько раз пересоздавать индекс при несовпадении состава
    """
    master_index_name: str = "RAGRouter-Master-Index"
    master_expiry_days: int = 365
    scoped_prefix: str = "Scoped-"
    scoped_expiry_days: int = 7
    dedicated_prefix: str = "RAGRouter-"
    dedicated_expiry_days: int = 30
    legacy_dedicated_indexes: bool = True
    max_rebuilds: int = 1


@dataclass
class ReadinessConfig:
    """Параметры ожидания готовности индекса.

    - poll_interval_s: интервал опроса
    - reused_max_wait_s: бюджет ожидания для переиспользуемых/отдельных индексов
    - created_max_wait_s: бюджет ожидания для только что созданных индексов
    - settle_delay_s: дополнительная пауза после готовности нового индекса
    """
    poll_interval_s: float = 2.0
    reused_max_wait_s: float = 20.0
    created_max_wait_s: float = 60.0
    settle_delay_s: float = 3.0


@dataclass
class GenerationConfig:
    """Параметры генерации ответа.

    - model_name: модель для обоих путей (grounded и fallback)
    - grounded_temperature / fallback_temperature: температуры путей
    - max_output_tokens: ограничение длины ответа
    - history_window: сколько последних реплик диалога передавать модели
    - poll_interval_s / max_poll_attempts: опрос асинхронной генерации
    - instructions_ttl_s: время жизни кэша системных инструкций
    - strict_parsing: падать на неожиданной структуре ответа (для тестов)
    """
    model_name: str = "gpt-4o-mini"
    grounded_temperature: float = 0.1
    fallback_temperature: float = 0.3
    max_output_tokens: int = 400
    history_window: int = 10
    poll_interval_s: float = 0.5
    max_poll_attempts: int = 30
    instructions_ttl_s: float = 60.0
    grounded_prompt: str = DEFAULT_GROUNDED_PROMPT
    fallback_prompt: str = DEFAULT_FALLBACK_PROMPT
    fallback_answer: str = "Не удалось обработать запрос."
    strict_parsing: bool = False


@dataclass
class StorageConfig:
    """Параметры хранилища: путь к SQLite или None для хранения в памяти."""
    sqlite_path: Optional[str] = None


@dataclass
class LatencyConfig:
    """Целевые задержки ответа (мс) и общий дедлайн запроса (с).

    Цели заведомо амбициозные: сетевые вызовы провайдера доминируют.
    """
    achieved_ms: int = 50
    acceptable_ms: int = 100
    request_deadline_s: float = 120.0


@dataclass
class Settings:
    """Сводная конфигурация сервиса."""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    latency: LatencyConfig = field(default_factory=LatencyConfig)


def load_settings() -> Settings:
    """Собирает Settings из переменных окружения (невалидные значения — к дефолтам)."""
    provider = ProviderConfig(
        api_key=_env_str("OPENAI_API_KEY", None),
        base_url=_env_str("OPENAI_BASE_URL", None),
        timeout_s=_env_float("RAG_PROVIDER_TIMEOUT_S", 30.0, minimum=1.0),
        max_retries=_env_int("RAG_PROVIDER_MAX_RETRIES", 2),
    )
    index = IndexConfig(
        master_index_name=_env_str("RAG_MASTER_INDEX_NAME", IndexConfig.master_index_name),
        master_expiry_days=_env_int("RAG_MASTER_EXPIRY_DAYS", 365, minimum=1),
        scoped_expiry_days=_env_int("RAG_SCOPED_EXPIRY_DAYS", 7, minimum=1),
        legacy_dedicated_indexes=_env_bool("RAG_LEGACY_DEDICATED_INDEXES", True),
    )
    readiness = ReadinessConfig(
        poll_interval_s=_env_float("RAG_POLL_INTERVAL_S", 2.0, minimum=0.1),
        reused_max_wait_s=_env_float("RAG_REUSED_MAX_WAIT_S", 20.0, minimum=1.0),
        created_max_wait_s=_env_float("RAG_CREATED_MAX_WAIT_S", 60.0, minimum=1.0),
        settle_delay_s=_env_float("RAG_SETTLE_DELAY_S", 3.0),
    )
    generation = GenerationConfig(
        model_name=_env_str("RAG_MODEL_NAME", GenerationConfig.model_name),
        max_output_tokens=_env_int("RAG_MAX_OUTPUT_TOKENS", 400, minimum=16),
        history_window=_env_int("RAG_HISTORY_WINDOW", 10),
        instructions_ttl_s=_env_float("RAG_INSTRUCTIONS_TTL_S", 60.0),
        strict_parsing=_env_bool("RAG_STRICT_PARSING", False),
    )
    storage = StorageConfig(sqlite_path=_env_str("RAG_SQLITE_PATH", None))
    latency = LatencyConfig(
        request_deadline_s=_env_float("RAG_REQUEST_DEADLINE_S", 120.0, minimum=1.0),
    )
    return Settings(
        provider=provider,
        index=index,
        readiness=readiness,
        generation=generation,
        storage=storage,
        latency=latency,
    )
