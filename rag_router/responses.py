#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Разбор ответа Responses API в размеченные варианты.

Элементы output: message, file_search_call; ошибка — на верхнем уровне.
Неизвестный элемент в нестрогом режиме становится UnknownItem, в строгом
режиме вызывает MalformedProviderResponse.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import MalformedProviderResponse


class OutputText(BaseModel):
    type: Literal["output_text"]
    text: str
    annotations: List[Dict[str, Any]] = Field(default_factory=list)


class Refusal(BaseModel):
    type: Literal["refusal"]
    refusal: str


ContentPart = Annotated[Union[OutputText, Refusal], Field(discriminator="type")]


class MessageItem(BaseModel):
    type: Literal["message"]
    id: Optional[str] = None
    status: Optional[str] = None
    role: str = "assistant"
    content: List[ContentPart] = Field(default_factory=list)


class FileSearchCallItem(BaseModel):
    type: Literal["file_search_call"]
    id: Optional[str] = None
    status: Optional[str] = None
    queries: List[str] = Field(default_factory=list)
    results: Optional[List[Dict[str, Any]]] = None


class UnknownItem(BaseModel):
    """Запасной вариант для элементов, которые не удалось разобрать."""
    type: str = "unknown"
    raw: Dict[str, Any] = Field(default_factory=dict)
    error: str = ""


KnownItem = Annotated[Union[MessageItem, FileSearchCallItem], Field(discriminator="type")]
OutputItem = Union[MessageItem, FileSearchCallItem, UnknownItem]

_item_adapter: TypeAdapter = TypeAdapter(KnownItem)


class ResponseError(BaseModel):
    code: Optional[str] = None
    message: str = ""


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class ParsedResponse(BaseModel):
    id: str = ""
    status: Optional[str] = None
    output: List[OutputItem] = Field(default_factory=list)
    usage: Optional[Usage] = None
    error: Optional[ResponseError] = None

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens if self.usage else 0

    @property
    def search_calls(self) -> List[FileSearchCallItem]:
        return [i for i in self.output if isinstance(i, FileSearchCallItem)]

    def first_text(self) -> Optional[str]:
        """Первый текстовый фрагмент первого сообщения модели."""
        for item in self.output:
            if not isinstance(item, MessageItem):
                continue
            for part in item.content:
                if isinstance(part, OutputText) and part.text.strip():
                    return part.text
        return None


def parse_response(raw: Dict[str, Any], strict: bool = False) -> ParsedResponse:
    """Разбирает dict ответа провайдера в ParsedResponse."""
    if not isinstance(raw, dict):
        raise MalformedProviderResponse(f"Ожидался объект ответа, получено {type(raw).__name__}")

    items: List[OutputItem] = []
    for entry in raw.get("output") or []:
        try:
            items.append(_item_adapter.validate_python(entry))
        except ValidationError as exc:
            if strict:
                raise MalformedProviderResponse(f"Неожиданный элемент output: {exc}") from exc
            kind = entry.get("type", "unknown") if isinstance(entry, dict) else "unknown"
            items.append(UnknownItem(type=str(kind), raw=entry if isinstance(entry, dict) else {}, error=str(exc)))

    try:
        return ParsedResponse(
            id=raw.get("id") or "",
            status=raw.get("status"),
            output=items,
            usage=raw.get("usage"),
            error=raw.get("error"),
        )
    except ValidationError as exc:
        if strict:
            raise MalformedProviderResponse(f"Неожиданная структура ответа: {exc}") from exc
        return ParsedResponse(id=str(raw.get("id") or ""), status=raw.get("status"), output=items)
