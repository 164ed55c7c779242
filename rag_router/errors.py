#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Иерархия ошибок маршрутизатора и трансляция исключений openai."""

from contextlib import contextmanager
from typing import Iterator, Optional

import openai


class RouterError(Exception):
    """Базовая ошибка всех операций маршрутизатора."""


class ProviderError(RouterError):
    """Провайдер вернул ошибку, не относящуюся к доступности."""

    def __init__(self, message: str, operation: str = "", status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class ProviderUnavailable(ProviderError):
    """Сеть, таймаут, 5xx или 429: провайдер временно недоступен."""


class ResourceNotFound(ProviderError):
    """Индекс, файл или участник индекса не найден (404)."""


class IndexNotReady(RouterError):
    """Индекс не стал готов за отведённый бюджет ожидания."""

    def __init__(self, message: str, index_id: Optional[str] = None, reason: str = "") -> None:
        super().__init__(message)
        self.index_id = index_id
        self.reason = reason


class IndexMismatch(IndexNotReady):
    """Состав временного индекса не совпал с запрошенным даже после пересоздания."""


class IndexFailed(RouterError):
    """Индекс в состоянии failed/expired: повторять бесполезно."""

    def __init__(self, message: str, index_id: Optional[str] = None, status: str = "") -> None:
        super().__init__(message)
        self.index_id = index_id
        self.status = status


class NoActiveDocuments(RouterError):
    """Нет активных документов под запрос: провайдер не вызывается."""


class GenerationFailed(RouterError):
    """Асинхронная генерация завершилась не в статусе completed."""

    def __init__(self, message: str, status: str = "") -> None:
        super().__init__(message)
        self.status = status


class MalformedProviderResponse(RouterError):
    """Структура ответа провайдера не соответствует ожидаемой схеме."""


class DocumentNotFound(RouterError):
    """Документа нет в реестре."""


class DocumentNotUploaded(RouterError):
    """У документа нет file id провайдера: активировать нечего."""


def translate_provider_error(exc: Exception, operation: str) -> ProviderError:
    """Переводит исключение клиента openai в доменную ошибку."""
    message = f"{operation}: {exc}"
    if isinstance(exc, openai.APIConnectionError):
        # APITimeoutError — подкласс APIConnectionError
        return ProviderUnavailable(message, operation=operation)
    if isinstance(exc, openai.APIStatusError):
        code = exc.status_code
        if code == 404:
            return ResourceNotFound(message, operation=operation, status_code=code)
        if code == 429 or code >= 500:
            return ProviderUnavailable(message, operation=operation, status_code=code)
        return ProviderError(message, operation=operation, status_code=code)
    return ProviderError(message, operation=operation)


@contextmanager
def provider_call(operation: str) -> Iterator[None]:
    """Оборачивает вызов провайдера: исключения openai -> ProviderError."""
    try:
        yield
    except openai.OpenAIError as exc:
        raise translate_provider_error(exc, operation) from exc
