#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import time
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from rag_router.config import load_settings
from rag_router.errors import (
    DocumentNotFound,
    DocumentNotUploaded,
    ProviderUnavailable,
    ResourceNotFound,
    RouterError,
)
from rag_router.logger import get_logger
from rag_router.service import Services, build_services

logger = get_logger(__name__)


class QueryRequest(BaseModel):
    """Тело запроса: вопрос и, опционально, явный список документов.

    document_ids=None — поиск по мастер-индексу всех активных документов;
    список (в т.ч. пустой) — только по указанным документам.
    """
    query: str = Field(..., min_length=1)
    document_ids: Optional[List[str]] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None


class QueryResponse(BaseModel):
    """Ответ на запрос: текст, токены, время и число использованных индексов."""
    answer: str
    tokens_used: int
    took_ms: int
    indexes_used: int
    conversation_id: Optional[str] = None
    scope: Optional[str] = None
    outcome: str
    performance_target: str


class InstructionsRequest(BaseModel):
    instructions: Optional[str] = None


def _http_error(exc: RouterError) -> HTTPException:
    """Доменная ошибка → HTTP-статус."""
    if isinstance(exc, (DocumentNotFound, ResourceNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, DocumentNotUploaded):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ProviderUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def get_services(request: Request) -> Services:
    """Компоненты строятся один раз на приложение при первом запросе."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        try:
            services = build_services(load_settings())
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e))
        request.app.state.services = services
    return services


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="RAG Router API (OpenAI vector stores)", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services

    @app.get("/health")
    def health() -> Dict[str, str]:
        """Простой health-check эндпоинт для мониторинга/оркестраторов."""
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/query", response_model=QueryResponse)
    async def query(req: QueryRequest, services: Services = Depends(get_services)) -> QueryResponse:
        """Отвечает на вопрос по активным (или явно указанным) документам.

        Ошибки провайдера не превращаются в HTTP 5xx: пользователь получает
        текст-заглушку, а обе реплики всё равно сохраняются.
        """
        t0 = time.time()
        history = []
        if req.conversation_id:
            try:
                history = await services.store.list_turns(req.conversation_id, req.user_id)
            except Exception:
                logger.warning(f"Не удалось загрузить историю {req.conversation_id}", exc_info=True)

        result = await services.queries.submit_query(
            req.query,
            explicit_document_ids=req.document_ids,
            conversation_id=req.conversation_id,
            history=history,
            user_id=req.user_id,
        )
        logger.info(f"/query: {result.outcome} за {int((time.time() - t0) * 1000)}ms")
        return QueryResponse(
            answer=result.answer_text,
            tokens_used=result.tokens_used,
            took_ms=result.elapsed_ms,
            indexes_used=result.resolved_scope_count,
            conversation_id=result.conversation_id,
            scope=result.scope,
            outcome=result.outcome,
            performance_target=result.performance_target,
        )

    @app.get("/conversations/{conversation_id}")
    async def conversation(
        conversation_id: str,
        user_id: Optional[str] = None,
        services: Services = Depends(get_services),
    ) -> Dict[str, Any]:
        history = await services.queries.conversation_history(conversation_id, user_id)
        if not history["messages"]:
            raise HTTPException(status_code=404, detail=f"Диалог {conversation_id} не найден")
        return history

    @app.post("/documents/{document_id}/activate")
    async def activate(document_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
        try:
            result = await services.lifecycle.activate(document_id)
        except RouterError as e:
            raise _http_error(e)
        return {
            "document": asdict(result.document),
            "master_synced": result.master_synced,
            "warnings": result.warnings,
        }

    @app.post("/documents/{document_id}/deactivate")
    async def deactivate(document_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
        try:
            result = await services.lifecycle.deactivate(document_id)
        except RouterError as e:
            raise _http_error(e)
        return {
            "document": asdict(result.document),
            "master_synced": result.master_synced,
            "warnings": result.warnings,
        }

    @app.delete("/documents/{document_id}")
    async def delete_document(document_id: str, services: Services = Depends(get_services)) -> Dict[str, Any]:
        try:
            steps = await services.lifecycle.delete(document_id)
        except RouterError as e:
            raise _http_error(e)
        return {"document_id": document_id, "steps": [asdict(s) for s in steps]}

    @app.get("/master")
    async def master_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
        try:
            return await services.lifecycle.master_status()
        except RouterError as e:
            raise _http_error(e)

    @app.post("/master/sync")
    async def master_sync(services: Services = Depends(get_services)) -> Dict[str, Any]:
        try:
            result = await services.lifecycle.sync_master()
        except RouterError as e:
            raise _http_error(e)
        return asdict(result)

    @app.get("/indexes/health")
    async def indexes_health(services: Services = Depends(get_services)) -> Dict[str, Any]:
        try:
            return await services.lifecycle.health_report()
        except RouterError as e:
            raise _http_error(e)

    @app.put("/settings/instructions")
    async def set_instructions(req: InstructionsRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
        """Сохраняет системные инструкции и сразу обновляет их кэш."""
        try:
            await services.store.set_system_instructions(req.instructions)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        services.instructions.set(req.instructions)
        return {"instructions": await services.instructions.get()}

    return app


app = create_app()


def main() -> None:
    """Запуск сервера: rag-router или python -m app.main."""
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
