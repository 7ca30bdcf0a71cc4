"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
from types import SimpleNamespace
from unittest.mock import AsyncMock

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

# Mirrors the unique indexes created in database.py
UNIQUE_KEYS = {
    "coaching_sessions": [("id",)],
    "profiles": [("email",)],
    "discount_codes": [("code",)],
    "discount_code_usage": [("discount_code_id", "email")],
    "stripe_events": [("event_id",)],
    "users": [("email",), ("user_id",)],
    "login_tokens": [("token_hash",)],
    "admin_allowlist": [("email",)],
}


def _matches_condition(value, condition) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$ne" and value == operand:
                return False
            if op == "$in" and value not in operand:
                return False
            if op == "$nin" and value in operand:
                return False
            if op == "$exists" and (value is not None) != bool(operand):
                return False
            if op in ("$gt", "$gte", "$lt", "$lte"):
                if value is None:
                    return False
                if op == "$gt" and not value > operand:
                    return False
                if op == "$gte" and not value >= operand:
                    return False
                if op == "$lt" and not value < operand:
                    return False
                if op == "$lte" and not value <= operand:
                    return False
        return True
    # Mongo treats {"field": None} as "null or missing"
    return value == condition


def matches(doc: dict, query: dict) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif not _matches_condition(doc.get(key), condition):
            return False
    return True


def project(doc: dict, projection) -> dict:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    fields = {k: v for k, v in projection.items() if k != "_id"}
    if any(fields.values()):
        return {k: doc[k] for k in fields if k in doc}
    for k in fields:
        doc.pop(k, None)
    return doc


def _sort_key(value):
    return (value is not None, value)


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: _sort_key(d.get(field)), reverse=order < 0)
        return self

    def skip(self, n):
        self._docs = self._docs[n:]
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    """Just enough of motor's collection API for the services under test."""

    def __init__(self, name: str):
        self.name = name
        self.docs = []

    def _check_unique(self, candidate: dict, ignore=None):
        for fields in UNIQUE_KEYS.get(self.name, []):
            if any(candidate.get(f) is None for f in fields):
                continue
            for existing in self.docs:
                if existing is ignore:
                    continue
                if all(existing.get(f) == candidate.get(f) for f in fields):
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} {fields}")

    def _apply(self, doc: dict, update: dict, inserting: bool = False):
        for key, value in (update.get("$set") or {}).items():
            doc[key] = copy.deepcopy(value)
        for key, value in (update.get("$inc") or {}).items():
            doc[key] = (doc.get(key) or 0) + value
        for key in (update.get("$unset") or {}):
            doc.pop(key, None)
        if inserting:
            for key, value in (update.get("$setOnInsert") or {}).items():
                doc.setdefault(key, copy.deepcopy(value))

    def _upsert_doc(self, query: dict, update: dict) -> dict:
        doc = {
            k: copy.deepcopy(v) for k, v in (query or {}).items()
            if not k.startswith("$") and not isinstance(v, dict)
        }
        self._apply(doc, update, inserting=True)
        return doc

    async def create_index(self, *args, **kwargs):
        return None

    async def insert_one(self, doc: dict):
        doc = copy.deepcopy(doc)
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc.get("id"))

    async def find_one(self, query=None, projection=None, **kwargs):
        for doc in self.docs:
            if matches(doc, query):
                return project(doc, projection)
        return None

    def find(self, query=None, projection=None, **kwargs):
        return FakeCursor([project(d, projection) for d in self.docs if matches(d, query)])

    async def count_documents(self, query=None, **kwargs):
        return sum(1 for d in self.docs if matches(d, query))

    async def update_one(self, query, update, upsert=False, **kwargs):
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                self._check_unique(doc, ignore=doc)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            doc = self._upsert_doc(query, update)
            await self.insert_one(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc.get("id") or doc.get("email"))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update, **kwargs):
        modified = 0
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply(doc, update)
                modified += int(before != doc)
        return SimpleNamespace(matched_count=modified, modified_count=modified, upserted_id=None)

    async def find_one_and_update(
        self, query, update, projection=None, return_document=ReturnDocument.BEFORE, upsert=False, **kwargs
    ):
        for doc in self.docs:
            if matches(doc, query):
                before = project(doc, projection)
                self._apply(doc, update)
                return project(doc, projection) if return_document == ReturnDocument.AFTER else before
        if upsert:
            doc = self._upsert_doc(query, update)
            await self.insert_one(doc)
            return project(doc, projection) if return_document == ReturnDocument.AFTER else None
        return None

    async def delete_one(self, query):
        for i, doc in enumerate(self.docs):
            if matches(doc, query):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query):
        kept = [d for d in self.docs if not matches(d, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return SimpleNamespace(deleted_count=deleted)


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name):
        return getattr(self, name)


@pytest.fixture(autouse=True)
def fake_db(monkeypatch):
    """Fresh in-memory database per test, installed on the shared database singleton."""
    from database import database
    db = FakeDatabase()
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture(autouse=True)
def offline_providers(monkeypatch):
    """No network in tests: emails are dev-mode logged, LLM calls fail unless a test patches them."""
    from utils.llm_chat import LLMError
    from services.email_service import email_service
    from utils.rate_limiter import rate_limiter

    for name in (
        "STRIPE_SECRET_KEY", "STRIPE_API_KEY", "STRIPE_WEBHOOK_SECRET",
        "STRIPE_WEBHOOK_SECRET_TEST", "STRIPE_WEBHOOK_SECRET_LIVE",
        "FRONTEND_PUBLIC_URL", "PUBLIC_APP_URL", "FRONTEND_URL",
    ):
        monkeypatch.delenv(name, raising=False)

    monkeypatch.setattr(email_service, "client", None)
    offline = AsyncMock(side_effect=LLMError("LLM disabled in tests"))
    monkeypatch.setattr("services.coach_service.chat", offline)
    monkeypatch.setattr("services.coach_service.chat_with_history", offline)
    monkeypatch.setattr("services.results_service.chat", offline)
    monkeypatch.setattr("services.error_resolution.chat", offline)
    rate_limiter.reset()
    yield
    rate_limiter.reset()


def emails_sent(db, template_alias=None):
    """message_logs rows, optionally filtered by template alias."""
    return [
        d for d in db.message_logs.docs
        if template_alias is None or d.get("template_alias") == template_alias
    ]


def audit_actions(db):
    return [d.get("action") for d in db.audit_logs.docs]


# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)
