"""Shared test helpers (in-memory Firestore, canned HTTP transports)."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from firebase_admin import firestore


class FakeSnapshot:
    def __init__(self, doc_id: str, data: dict[str, Any] | None):
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> dict[str, Any] | None:
        return dict(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, db: FakeFirestore, collection: str, doc_id: str):
        self._db = db
        self._collection = collection
        self.id = doc_id

    def get(self) -> FakeSnapshot:
        self._db.check("get")
        return FakeSnapshot(self.id, self._db.docs(self._collection).get(self.id))

    def set(self, data: dict[str, Any], merge: bool = False) -> None:
        self._db.check("set")
        # Emulate the server resolving sentinel timestamps
        resolved = {
            k: (datetime.now(timezone.utc) if v is firestore.SERVER_TIMESTAMP else v)
            for k, v in data.items()
        }
        docs = self._db.docs(self._collection)
        if merge and self.id in docs:
            docs[self.id] = {**docs[self.id], **resolved}
        else:
            docs[self.id] = resolved
        self._db.writes.append((self._collection, self.id, data))

    def delete(self) -> None:
        self._db.check("delete")
        self._db.docs(self._collection).pop(self.id, None)
        self._db.deletes.append((self._collection, self.id))


class FakeQuery:
    def __init__(self, db: FakeFirestore, collection: str, order_field: str | None = None, descending: bool = False):
        self._db = db
        self._collection = collection
        self._order_field = order_field
        self._descending = descending

    def order_by(self, field: str, direction: str | None = None) -> FakeQuery:
        return FakeQuery(self._db, self._collection, field, direction == firestore.Query.DESCENDING)

    def stream(self):
        self._db.check("stream")
        items = list(self._db.docs(self._collection).items())
        if self._order_field:
            items.sort(key=lambda kv: kv[1].get(self._order_field) or "", reverse=self._descending)
        return iter(FakeSnapshot(doc_id, data) for doc_id, data in items)


class FakeCollection(FakeQuery):
    def document(self, doc_id: str) -> FakeDocumentRef:
        return FakeDocumentRef(self._db, self._collection, doc_id)


class FakeFirestore:
    """Dict-backed stand-in for the Firestore client calls the service makes."""

    def __init__(self):
        self.data: dict[str, dict[str, dict[str, Any]]] = {}
        self.writes: list[tuple[str, str, dict[str, Any]]] = []
        self.deletes: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}

    def docs(self, collection: str) -> dict[str, dict[str, Any]]:
        return self.data.setdefault(collection, {})

    def check(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)


class GatedGenerator:
    """Generation double whose answers wait for an explicit release."""

    def __init__(self, answer: str = "It covers thermodynamics."):
        self.answer = answer
        self.release = asyncio.Event()
        self.calls: list[tuple[str, list[Any]]] = []

    async def generate(self, document, question, recent_history, max_retries=None):
        self.calls.append((question, list(recent_history)))
        await self.release.wait()
        return self.answer


class PerQuestionGenerator:
    """Generation double with a separate release gate for each question."""

    def __init__(self, answers: dict[str, str]):
        self.answers = answers
        self.gates = {question: asyncio.Event() for question in answers}

    async def generate(self, document, question, recent_history, max_retries=None):
        await self.gates[question].wait()
        return self.answers[question]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


def gemini_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def gemini_error(status_code: int, message: str) -> httpx.Response:
    return httpx.Response(status_code, json={"error": {"code": status_code, "message": message}})
