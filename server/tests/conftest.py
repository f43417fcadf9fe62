"""
Shared pytest fixtures for the CiviGuard test suite.

Provides an httpx AsyncClient bound to the ASGI app, an in-memory mongomock
database swapped in for MongoDB, a scripted stand-in for the OpenAI chat
helper, and pre-authenticated headers for each role.
"""

import os
import sys
import uuid
from pathlib import Path
from datetime import datetime, timezone

# Required secrets must exist before the application module is imported
os.environ.setdefault("JWT_SECRET", "test-secret-" + "x" * 40)
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")
os.environ.setdefault("ADMIN_EMAILS", "boss@example.com")

import pytest
import pytest_asyncio
import httpx
import mongomock

# Ensure the server modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import civiguard
from civiguard import app, limiter


class FakeChat:
    """Replaces ``civiguard.openai_chat``; ``reply`` decides each answer."""

    def __init__(self):
        self.calls = []
        self.fail = False
        self.reply = self.default_reply

    @staticmethod
    def default_reply(prompt: str, json_mode: bool):
        if json_mode:
            return '{"category": "pothole", "priority": "high", "explanation": "Road damage.", "isValid": true, "reason": "Civic issue."}'
        if "title" in prompt.split(".")[0]:
            return "  Improved complaint title  "
        return "  Improved complaint description with full details.  "

    async def __call__(self, messages, json_mode=False):
        prompt = messages[-1]["content"]
        self.calls.append({"prompt": prompt, "json_mode": json_mode})
        if self.fail:
            return None
        return self.reply(prompt, json_mode)


@pytest.fixture
def mongo(monkeypatch):
    database = mongomock.MongoClient().civiguard
    monkeypatch.setattr(civiguard, "db", database)
    return database


@pytest.fixture
def fake_ai(monkeypatch):
    fake = FakeChat()
    monkeypatch.setattr(civiguard, "openai_chat", fake)
    return fake


@pytest_asyncio.fixture
async def client(mongo, fake_ai):
    """In-process httpx AsyncClient; unhandled errors become 500 responses."""
    limiter.enabled = False
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def make_user(db, name: str, email: str, role: str = "citizen") -> dict:
    now = datetime.now(timezone.utc)
    user = {"_id": str(uuid.uuid4()), "googleId": f"google-{uuid.uuid4().hex}",
            "email": email, "name": name, "picture": None, "role": role,
            "createdAt": now, "lastLoginAt": now}
    db.users.insert_one(user)
    return user


def auth_headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {civiguard.create_access_token(user['_id'])}"}


def make_complaint(db, owner: dict, **overrides) -> dict:
    """Insert a complaint document directly, bypassing the API."""
    created = overrides.pop("createdAt", datetime(2024, 1, 1, tzinfo=timezone.utc))
    lat = overrides.pop("lat", 17.385)
    lng = overrides.pop("lng", 78.4867)
    doc = {
        "_id": str(uuid.uuid4()), "title": "Broken street light",
        "description": "The light on 2nd street is off.",
        "enhancedTitle": "Broken street light", "enhancedDescription": "The light on 2nd street is off.",
        "category": "street_light", "priority": "medium", "status": "pending",
        "location": {"type": "Point", "coordinates": [lng, lat]}, "address": None,
        "userId": owner["_id"], "images": [], "comments": [], "isPublic": False,
        "createdAt": created, "updatedAt": created,
    }
    doc.update(overrides)
    db.complaints.insert_one(doc)
    return doc


@pytest.fixture
def citizen(mongo):
    return make_user(mongo, "Ravi Teja", "ravi@example.com")


@pytest.fixture
def other_citizen(mongo):
    return make_user(mongo, "Sana Begum", "sana@example.com")


@pytest.fixture
def admin(mongo):
    return make_user(mongo, "City Admin", "admin@example.com", role="admin")


@pytest.fixture
def citizen_headers(citizen):
    return auth_headers(citizen)


@pytest.fixture
def other_headers(other_citizen):
    return auth_headers(other_citizen)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)
