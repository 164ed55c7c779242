#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Хранилище: реестр документов, журнал диалогов и настройки.

Ядро читает из реестра активные документы и их индексы, пишет реплики
диалога и читает системные инструкции. Две реализации: в памяти и SQLite.
"""

import asyncio
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Sequence

from .models import ConversationTurn, Document


class DocumentRegistry(Protocol):
    async def get(self, document_id: str) -> Optional[Document]:
        ...

    async def get_many(self, document_ids: Sequence[str]) -> List[Document]:
        ...

    async def list_active(self) -> List[Document]:
        ...

    async def list_all(self) -> List[Document]:
        ...

    async def save(self, document: Document) -> None:
        ...

    async def delete(self, document_id: str) -> bool:
        ...


class ConversationLog(Protocol):
    async def create_conversation(self, user_id: Optional[str], title: str) -> str:
        ...

    async def append(self, turn: ConversationTurn) -> None:
        ...

    async def list_turns(self, conversation_id: str, user_id: Optional[str] = None) -> List[ConversationTurn]:
        ...


class SettingsStore(Protocol):
    async def get_system_instructions(self) -> Optional[str]:
        ...

    async def set_system_instructions(self, text: Optional[str]) -> None:
        ...


class InMemoryStore:
    """Реестр, журнал и настройки в памяти процесса (тесты, одиночный процесс)."""

    def __init__(self, documents: Sequence[Document] = ()) -> None:
        self._documents: Dict[str, Document] = {d.id: replace(d) for d in documents}
        self._conversations: Dict[str, Optional[str]] = {}
        self._turns: List[ConversationTurn] = []
        self._instructions: Optional[str] = None

    async def get(self, document_id: str) -> Optional[Document]:
        doc = self._documents.get(document_id)
        return replace(doc) if doc else None

    async def get_many(self, document_ids: Sequence[str]) -> List[Document]:
        return [replace(self._documents[i]) for i in dict.fromkeys(document_ids) if i in self._documents]

    async def list_active(self) -> List[Document]:
        return [replace(d) for d in self._documents.values() if d.is_active and d.provider_file_id]

    async def list_all(self) -> List[Document]:
        return [replace(d) for d in self._documents.values()]

    async def save(self, document: Document) -> None:
        self._documents[document.id] = replace(document)

    async def delete(self, document_id: str) -> bool:
        return self._documents.pop(document_id, None) is not None

    async def create_conversation(self, user_id: Optional[str], title: str) -> str:
        conversation_id = str(uuid.uuid4())
        self._conversations[conversation_id] = user_id
        return conversation_id

    async def append(self, turn: ConversationTurn) -> None:
        self._turns.append(replace(turn))

    async def list_turns(self, conversation_id: str, user_id: Optional[str] = None) -> List[ConversationTurn]:
        return [
            replace(t)
            for t in self._turns
            if t.conversation_id == conversation_id and (user_id is None or t.user_id == user_id)
        ]

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    async def get_system_instructions(self) -> Optional[str]:
        return self._instructions

    async def set_system_instructions(self, text: Optional[str]) -> None:
        self._instructions = text


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        provider_file_id TEXT UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 0,
        dedicated_index_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_active ON documents(is_active)",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        title TEXT,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conversation_id TEXT REFERENCES conversations(id),
        user_id TEXT,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        response_time_ms INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        system_instructions TEXT
    )
    """,
)


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        name=row["name"],
        provider_file_id=row["provider_file_id"],
        is_active=bool(row["is_active"]),
        dedicated_index_id=row["dedicated_index_id"],
    )


class SqliteStore:
    """Реестр, журнал и настройки в SQLite.

    Одно соединение под замком; запросы выполняются вне event loop через
    asyncio.to_thread.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=30.0
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        with self._connection() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._conn is None:
                raise RuntimeError("Соединение с SQLite закрыто")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _fetch_documents(self, sql: str, params: Sequence[object] = ()) -> List[Document]:
        with self._connection() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_document(r) for r in rows]

    async def get(self, document_id: str) -> Optional[Document]:
        docs = await asyncio.to_thread(self._fetch_documents, "SELECT * FROM documents WHERE id = ?", (document_id,))
        return docs[0] if docs else None

    async def get_many(self, document_ids: Sequence[str]) -> List[Document]:
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        return await asyncio.to_thread(
            self._fetch_documents, f"SELECT * FROM documents WHERE id IN ({placeholders})", ids
        )

    async def list_active(self) -> List[Document]:
        return await asyncio.to_thread(
            self._fetch_documents,
            "SELECT * FROM documents WHERE is_active = 1 AND provider_file_id IS NOT NULL ORDER BY rowid DESC",
        )

    async def list_all(self) -> List[Document]:
        return await asyncio.to_thread(self._fetch_documents, "SELECT * FROM documents ORDER BY rowid DESC")

    def _save(self, document: Document) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (id, name, provider_file_id, is_active, dedicated_index_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    provider_file_id = excluded.provider_file_id,
                    is_active = excluded.is_active,
                    dedicated_index_id = excluded.dedicated_index_id
                """,
                (
                    document.id,
                    document.name,
                    document.provider_file_id,
                    int(document.is_active),
                    document.dedicated_index_id,
                ),
            )

    async def save(self, document: Document) -> None:
        await asyncio.to_thread(self._save, document)

    def _delete(self, document_id: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return cursor.rowcount > 0

    async def delete(self, document_id: str) -> bool:
        return await asyncio.to_thread(self._delete, document_id)

    def _create_conversation(self, user_id: Optional[str], title: str) -> str:
        conversation_id = str(uuid.uuid4())
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO conversations (id, user_id, title, created_at) VALUES (?, ?, ?, strftime('%s','now'))",
                (conversation_id, user_id, title),
            )
        return conversation_id

    async def create_conversation(self, user_id: Optional[str], title: str) -> str:
        return await asyncio.to_thread(self._create_conversation, user_id, title)

    def _append(self, turn: ConversationTurn) -> None:
        with self._connection() as conn:
            if turn.conversation_id:
                # диалог, созданный вне этого хранилища
                conn.execute(
                    "INSERT OR IGNORE INTO conversations (id, user_id, title, created_at) VALUES (?, ?, '', ?)",
                    (turn.conversation_id, turn.user_id, float(turn.created_at)),
                )
            conn.execute(
                """
                INSERT INTO messages (conversation_id, user_id, role, content, tokens_used, response_time_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    turn.conversation_id,
                    turn.user_id,
                    turn.role,
                    turn.content,
                    int(turn.tokens_used),
                    int(turn.elapsed_ms),
                    float(turn.created_at),
                ),
            )

    async def append(self, turn: ConversationTurn) -> None:
        await asyncio.to_thread(self._append, turn)

    def _list_turns(self, conversation_id: str, user_id: Optional[str]) -> List[ConversationTurn]:
        sql = "SELECT * FROM messages WHERE conversation_id = ?"
        params: List[object] = [conversation_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at, id"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            ConversationTurn(
                role=r["role"],
                content=r["content"],
                tokens_used=r["tokens_used"],
                elapsed_ms=r["response_time_ms"],
                conversation_id=r["conversation_id"],
                user_id=r["user_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def list_turns(self, conversation_id: str, user_id: Optional[str] = None) -> List[ConversationTurn]:
        return await asyncio.to_thread(self._list_turns, conversation_id, user_id)

    def _get_instructions(self) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute("SELECT system_instructions FROM app_settings WHERE id = 1").fetchone()
        return row["system_instructions"] if row else None

    async def get_system_instructions(self) -> Optional[str]:
        return await asyncio.to_thread(self._get_instructions)

    def _set_instructions(self, text: Optional[str]) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO app_settings (id, system_instructions) VALUES (1, ?)
                ON CONFLICT(id) DO UPDATE SET system_instructions = excluded.system_instructions
                """,
                (text,),
            )

    async def set_system_instructions(self, text: Optional[str]) -> None:
        await asyncio.to_thread(self._set_instructions, text)
