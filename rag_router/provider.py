#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Адаптер провайдера: vector stores, файлы и Responses API поверх AsyncOpenAI."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from .config import ProviderConfig
from .errors import ProviderError, provider_call
from .models import FileCounts, IndexHandle, IndexMember, IndexStatus, MemberStatus

_PAGE_SIZE = 100
USER_ID_HEADER = "Helicone-User-Id"


def make_openai_client(cfg: ProviderConfig) -> AsyncOpenAI:
    """Создаёт асинхронный клиент OpenAI по конфигурации.

    - base_url: опционально, для прокси или шлюза
    - default_headers: дополнительные заголовки для каждого запроса
    """
    if not cfg.api_key:
        raise RuntimeError("OPENAI_API_KEY не задан.")
    kwargs: Dict[str, Any] = {
        "api_key": cfg.api_key,
        "timeout": cfg.timeout_s,
        "max_retries": cfg.max_retries,
    }
    if cfg.base_url:
        kwargs["base_url"] = cfg.base_url
    if cfg.default_headers:
        kwargs["default_headers"] = dict(cfg.default_headers)
    return AsyncOpenAI(**kwargs)


def user_headers(user_id: Optional[str]) -> Optional[Dict[str, str]]:
    """Заголовок с идентификатором пользователя для конкретного запроса (для шлюза-прокси)."""
    if not user_id:
        return None
    return {USER_ID_HEADER: user_id}


def _to_handle(vs: Any) -> IndexHandle:
    fc = getattr(vs, "file_counts", None)
    counts = FileCounts(
        total=getattr(fc, "total", 0) or 0,
        completed=getattr(fc, "completed", 0) or 0,
        failed=getattr(fc, "failed", 0) or 0,
        in_progress=getattr(fc, "in_progress", 0) or 0,
        cancelled=getattr(fc, "cancelled", 0) or 0,
    )
    expires_after = getattr(vs, "expires_after", None)
    return IndexHandle(
        id=vs.id,
        name=getattr(vs, "name", None) or "",
        status=IndexStatus.from_provider(getattr(vs, "status", None)),
        counts=counts,
        expires_after_days=getattr(expires_after, "days", None),
        expires_at=getattr(vs, "expires_at", None),
        created_at=getattr(vs, "created_at", None),
    )


def _to_member(vsf: Any, index_id: str) -> IndexMember:
    last_error = getattr(vsf, "last_error", None)
    return IndexMember(
        file_id=vsf.id,
        index_id=getattr(vsf, "vector_store_id", None) or index_id,
        status=MemberStatus.from_provider(getattr(vsf, "status", None)),
        last_error=getattr(last_error, "message", None) if last_error else None,
    )


class VectorStoreProvider:
    """Тонкая обёртка над AsyncOpenAI в терминах индексов и участников.

    Все исключения клиента переводятся в ProviderError и его подклассы,
    наружу отдаются доменные модели или простые dict.
    """

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    async def create_index(self, name: str, file_ids: Sequence[str], expires_after_days: int) -> IndexHandle:
        kwargs: Dict[str, Any] = {
            "name": name,
            "expires_after": {"anchor": "last_active_at", "days": int(expires_after_days)},
        }
        if file_ids:
            kwargs["file_ids"] = list(file_ids)
        with provider_call("create_index"):
            vs = await self._client.vector_stores.create(**kwargs)
        handle = _to_handle(vs)
        if handle.status is IndexStatus.PROCESSING:
            handle = handle.with_status(IndexStatus.CREATING)
        return handle

    async def retrieve_index(self, index_id: str) -> IndexHandle:
        with provider_call("retrieve_index"):
            vs = await self._client.vector_stores.retrieve(index_id)
        return _to_handle(vs)

    async def delete_index(self, index_id: str) -> bool:
        with provider_call("delete_index"):
            result = await self._client.vector_stores.delete(index_id)
        return bool(getattr(result, "deleted", False))

    async def find_indexes(self, name: str) -> List[IndexHandle]:
        """Все индексы с точным совпадением имени (постранично)."""
        found: List[IndexHandle] = []
        with provider_call("list_indexes"):
            async for vs in self._client.vector_stores.list(limit=_PAGE_SIZE):
                if getattr(vs, "name", None) == name:
                    found.append(_to_handle(vs))
        return found

    async def list_members(self, index_id: str) -> List[IndexMember]:
        members: List[IndexMember] = []
        with provider_call("list_members"):
            async for vsf in self._client.vector_stores.files.list(vector_store_id=index_id, limit=_PAGE_SIZE):
                members.append(_to_member(vsf, index_id))
        return members

    async def add_member(self, index_id: str, file_id: str) -> IndexMember:
        with provider_call("add_member"):
            vsf = await self._client.vector_stores.files.create(vector_store_id=index_id, file_id=file_id)
        return _to_member(vsf, index_id)

    async def remove_member(self, index_id: str, file_id: str) -> bool:
        with provider_call("remove_member"):
            result = await self._client.vector_stores.files.delete(file_id, vector_store_id=index_id)
        return bool(getattr(result, "deleted", False))

    async def file_status(self, file_id: str) -> str:
        """Статус обработки загруженного файла у провайдера."""
        with provider_call("retrieve_file"):
            f = await self._client.files.retrieve(file_id)
        return getattr(f, "status", None) or "unknown"

    async def delete_file(self, file_id: str) -> bool:
        with provider_call("delete_file"):
            result = await self._client.files.delete(file_id)
        return bool(getattr(result, "deleted", False))

    async def create_response(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        index_ids: Sequence[str],
        temperature: float,
        max_output_tokens: int,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Запускает grounded-генерацию с file_search по указанным индексам."""
        if not index_ids:
            raise ProviderError("create_response: пустой список индексов", operation="create_response")
        with provider_call("create_response"):
            resp = await self._client.responses.create(
                model=model,
                input=messages,
                tools=[{"type": "file_search", "vector_store_ids": list(index_ids)}],
                tool_choice="auto",
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                extra_headers=user_headers(user_id),
            )
        return resp.model_dump()

    async def retrieve_response(self, response_id: str) -> Dict[str, Any]:
        with provider_call("retrieve_response"):
            resp = await self._client.responses.retrieve(response_id)
        return resp.model_dump()

    async def chat_completion(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        user_id: Optional[str] = None,
    ) -> Tuple[Optional[str], int]:
        """Обычная генерация без поиска: (текст или None, число токенов)."""
        with provider_call("chat_completion"):
            resp = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                extra_headers=user_headers(user_id),
            )
        text = None
        if resp.choices:
            text = (resp.choices[0].message.content or "").strip() or None
        tokens = resp.usage.total_tokens if resp.usage else 0
        return text, int(tokens or 0)
