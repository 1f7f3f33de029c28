import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from services.reflection_engine.draft_store import InMemoryDraftStore
from services.reflection_engine.models import StoredRecord
from services.reflection_engine.registry import TemplateRegistry, load_template_data
from services.reflection_engine.submission import SubmissionController
from src.auth.identity import StaticIdentity

# Two steps; the second has a required scale and a required min-length text.
TWO_STEP_TEMPLATE = {
    "id": "two_step",
    "title": "Two Step Check-in",
    "version": 1,
    "steps": [
        {
            "id": "context",
            "title": "Context",
            "fields": [
                {"id": "topic", "label": "Topic", "kind": "free_text", "required": True},
                {"id": "notes", "label": "Notes", "kind": "free_text"},
            ],
        },
        {
            "id": "rating",
            "title": "Rating",
            "fields": [
                {
                    "id": "score",
                    "label": "Score",
                    "kind": "numeric_scale",
                    "required": True,
                    "scale_min": 1,
                    "scale_max": 10,
                },
                {
                    "id": "lesson",
                    "label": "Lesson",
                    "kind": "free_text",
                    "required": True,
                    "min_length": 10,
                },
            ],
        },
    ],
}


class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


class FakeRecordStore:
    """
    Record store double. `gate` (if set) holds inserts until released, and
    `fail_with` raises on the next insert.
    """

    def __init__(self):
        self.inserts: List[Dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.fail_with: Optional[Exception] = None

    async def insert(self, record_id, user_id, template_id, answers, completed_at, metadata=None):
        self.inserts.append({
            "record_id": record_id,
            "user_id": user_id,
            "template_id": template_id,
            "answers": answers,
            "completed_at": completed_at,
            "metadata": metadata,
        })
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            error, self.fail_with = self.fail_with, None
            raise error
        return StoredRecord(
            record_id=record_id,
            user_id=user_id,
            template_id=template_id,
            completed_at=completed_at,
        )


class FakeRedis:
    """The subset of the redis.asyncio client the draft store uses, over a dict."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiries: Dict[str, Optional[int]] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiries[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed


@pytest.fixture
def two_step_template():
    return load_template_data(TWO_STEP_TEMPLATE)


@pytest.fixture
def registry(two_step_template):
    return TemplateRegistry([two_step_template])


@pytest.fixture
def draft_store():
    return InMemoryDraftStore()


@pytest.fixture
def record_store():
    return FakeRecordStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return StaticIdentity("user-1")


@pytest.fixture
def controller(registry, record_store, draft_store, identity, clock):
    return SubmissionController(registry, record_store, draft_store, identity, clock=clock)


@pytest.fixture
def fake_redis():
    return FakeRedis()
