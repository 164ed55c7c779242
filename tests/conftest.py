"""
Общие заглушки для тестов: провайдер в памяти и виртуальные часы.

FakeProvider повторяет интерфейс VectorStoreProvider:
- новые индексы/участники становятся completed после ready_after опросов retrieve_index
- файлы из failing_files обрабатываются со статусом failed
- errors[operation] — исключение, которое выбрасывает соответствующий метод
- members_lag — сколько вызовов list_members после готовности возвращают пустой список
- user_ids — user_id каждого вызова генерации
"""

import itertools
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import pytest

from rag_router.config import (
    GenerationConfig,
    IndexConfig,
    LatencyConfig,
    ReadinessConfig,
    Settings,
    StorageConfig,
)
from rag_router.errors import ProviderError, ResourceNotFound
from rag_router.models import Document, FileCounts, IndexHandle, IndexMember, IndexStatus, MemberStatus
from rag_router.storage import InMemoryStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


class _FakeIndex:
    def __init__(self, index_id: str, name: str, expires_after_days: int, created_at: int) -> None:
        self.id = index_id
        self.name = name
        self.expires_after_days = expires_after_days
        self.created_at = created_at
        self.status = IndexStatus.CREATING
        self.members: Dict[str, MemberStatus] = {}
        self.pending_polls = 0
        self.lag = 0

    def handle(self) -> IndexHandle:
        members = [IndexMember(f, self.id, s) for f, s in self.members.items()]
        return IndexHandle(
            id=self.id,
            name=self.name,
            status=self.status,
            counts=FileCounts.from_members(members),
            expires_after_days=self.expires_after_days,
            created_at=self.created_at,
        )


class FakeProvider:
    def __init__(self, ready_after: int = 1) -> None:
        self.ready_after = ready_after
        self.failing_files: Set[str] = set()
        self.errors: Dict[str, Exception] = {}
        self.members_lag = 0
        self.indexes: Dict[str, _FakeIndex] = {}
        self.deleted_indexes: List[str] = []
        self.deleted_files: List[str] = []
        self.calls: List[Tuple[str, Any]] = []
        self.responses: List[Dict[str, Any]] = []
        self.chat_reply: Tuple[Optional[str], int] = ("Ответ без поиска", 7)
        self.user_ids: List[Optional[str]] = []
        self._ids = itertools.count(1)
        self._ticks = itertools.count(1)

    # --- служебное -------------------------------------------------------
    def _record(self, op: str, arg: Any = None) -> None:
        self.calls.append((op, arg))
        if op in self.errors:
            raise self.errors[op]

    def count(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)

    def _get(self, index_id: str) -> _FakeIndex:
        idx = self.indexes.get(index_id)
        if idx is None:
            raise ResourceNotFound(f"vector store {index_id} not found", operation="retrieve_index", status_code=404)
        return idx

    def seed_index(
        self,
        name: str,
        file_ids: Sequence[str],
        status: IndexStatus = IndexStatus.READY,
        member_status: MemberStatus = MemberStatus.COMPLETED,
    ) -> str:
        """Индекс, уже существующий у провайдера до начала теста."""
        idx = _FakeIndex(f"vs_{next(self._ids)}", name, 7, next(self._ticks))
        idx.status = status
        idx.members = {f: member_status for f in file_ids}
        if status in (IndexStatus.CREATING, IndexStatus.PROCESSING):
            idx.pending_polls = self.ready_after
        self.indexes[idx.id] = idx
        return idx.id

    def _settle(self, idx: _FakeIndex) -> None:
        for f, s in idx.members.items():
            if s is MemberStatus.IN_PROGRESS:
                idx.members[f] = MemberStatus.FAILED if f in self.failing_files else MemberStatus.COMPLETED
        idx.status = IndexStatus.READY
        idx.lag = self.members_lag

    # --- индексы ---------------------------------------------------------
    async def create_index(self, name: str, file_ids: Sequence[str], expires_after_days: int) -> IndexHandle:
        self._record("create_index", name)
        idx = _FakeIndex(f"vs_{next(self._ids)}", name, expires_after_days, next(self._ticks))
        idx.members = {f: MemberStatus.IN_PROGRESS for f in file_ids}
        if file_ids:
            idx.pending_polls = self.ready_after
        else:
            idx.status = IndexStatus.READY
        self.indexes[idx.id] = idx
        return idx.handle()

    async def retrieve_index(self, index_id: str) -> IndexHandle:
        self._record("retrieve_index", index_id)
        idx = self._get(index_id)
        if idx.status in (IndexStatus.CREATING, IndexStatus.PROCESSING):
            if idx.pending_polls > 0:
                idx.pending_polls -= 1
                idx.status = IndexStatus.PROCESSING
            if idx.pending_polls <= 0:
                self._settle(idx)
        return idx.handle()

    async def delete_index(self, index_id: str) -> bool:
        self._record("delete_index", index_id)
        self._get(index_id)
        del self.indexes[index_id]
        self.deleted_indexes.append(index_id)
        return True

    async def find_indexes(self, name: str) -> List[IndexHandle]:
        self._record("find_indexes", name)
        return [idx.handle() for idx in self.indexes.values() if idx.name == name]

    async def list_members(self, index_id: str) -> List[IndexMember]:
        self._record("list_members", index_id)
        idx = self._get(index_id)
        if idx.lag > 0:
            idx.lag -= 1
            return []
        return [IndexMember(f, index_id, s) for f, s in idx.members.items()]

    async def add_member(self, index_id: str, file_id: str) -> IndexMember:
        self._record("add_member", file_id)
        idx = self._get(index_id)
        idx.members[file_id] = MemberStatus.IN_PROGRESS
        idx.status = IndexStatus.PROCESSING
        idx.pending_polls = self.ready_after
        return IndexMember(file_id, index_id, MemberStatus.IN_PROGRESS)

    async def remove_member(self, index_id: str, file_id: str) -> bool:
        self._record("remove_member", file_id)
        idx = self._get(index_id)
        if file_id not in idx.members:
            raise ResourceNotFound(f"file {file_id} not in {index_id}", operation="remove_member", status_code=404)
        del idx.members[file_id]
        return True

    # --- файлы -----------------------------------------------------------
    async def file_status(self, file_id: str) -> str:
        self._record("file_status", file_id)
        return "processed"

    async def delete_file(self, file_id: str) -> bool:
        self._record("delete_file", file_id)
        self.deleted_files.append(file_id)
        return True

    # --- генерация -------------------------------------------------------
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
        self._record("create_response", list(index_ids))
        self.user_ids.append(user_id)
        if not index_ids:
            raise ProviderError("create_response: пустой список индексов", operation="create_response")
        if self.responses:
            return self.responses.pop(0)
        return completed_response("Ответ по документам", tokens=42)

    async def retrieve_response(self, response_id: str) -> Dict[str, Any]:
        self._record("retrieve_response", response_id)
        if self.responses:
            return self.responses.pop(0)
        return completed_response("Ответ по документам", tokens=42, response_id=response_id)

    async def chat_completion(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        user_id: Optional[str] = None,
    ) -> Tuple[Optional[str], int]:
        self._record("chat_completion", messages)
        self.user_ids.append(user_id)
        return self.chat_reply


def completed_response(text: str, tokens: int = 42, response_id: str = "resp_1", status: str = "completed") -> Dict[str, Any]:
    return {
        "id": response_id,
        "status": status,
        "output": [
            {"type": "file_search_call", "id": "fs_1", "status": "completed", "queries": ["q"], "results": None},
            {
                "type": "message",
                "id": "msg_1",
                "status": "completed",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text, "annotations": []}],
            },
        ],
        "usage": {"input_tokens": tokens - 10, "output_tokens": 10, "total_tokens": tokens},
        "error": None,
    }


def make_settings(**generation: Any) -> Settings:
    return Settings(
        index=IndexConfig(legacy_dedicated_indexes=False),
        readiness=ReadinessConfig(poll_interval_s=2.0, reused_max_wait_s=20.0, created_max_wait_s=60.0, settle_delay_s=3.0),
        generation=GenerationConfig(poll_interval_s=0.5, max_poll_attempts=5, **generation),
        storage=StorageConfig(sqlite_path=None),
        latency=LatencyConfig(),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(
        [
            Document("doc-1", "Регламент.pdf", "file-1", is_active=True),
            Document("doc-2", "Инструкция.docx", "file-2", is_active=True),
            Document("doc-3", "Архив.pdf", "file-3", is_active=False),
            Document("doc-4", "Черновик.txt", None, is_active=False),
        ]
    )
