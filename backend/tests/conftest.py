import asyncio
import os
import sys
from datetime import date

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.pool import NullPool

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./data/nudgely-test.db")
os.environ.setdefault("CRON_SECRET", "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from nudgely import config, database
from nudgely.api import complete, cron, deps, nudges, templates
from nudgely.config import Settings
from nudgely.database import build_engine, build_session_factory, create_tables
from nudgely.services.store import NudgeStore

CRON_SECRET = os.environ["CRON_SECRET"]


class FakeNotifier:
    """Records every message; addresses in ``failing`` are rejected."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.messages = []
        self.rejected = []

    async def send(self, to, subject, html_content):
        if to in self.failing:
            self.rejected.append((to, subject))
            return False
        self.messages.append((to, subject, html_content))
        return True

    def subjects_for(self, to):
        return [subject for recipient, subject, _ in self.messages if recipient == to]


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'nudgely.db'}", poolclass=NullPool)
    asyncio.run(create_tables(engine))
    yield build_session_factory(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def store(session_factory):
    return NudgeStore(session_factory)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def settings():
    return Settings(
        cron_secret=CRON_SECRET,
        app_url="https://nudgely.test",
        tick_tolerance_minutes=15,
        scan_concurrency=2,
        per_nudge_timeout_seconds=5.0,
        pass_deadline_seconds=30.0,
        max_dispatch_attempts=3,
    )


@pytest.fixture
def create_nudge(store):
    """Insert a nudge; defaults describe a weekly Wednesday 9:00 AM Sydney nudge."""

    def _create(recipients=(("Ada", "ada@example.com"), ("Grace", "grace@example.com")), **overrides):
        fields = {
            "slug": "weekly-sync",
            "name": "Weekly Sync",
            "description": "Post your update",
            "team_id": "team-1",
            "status": "ACTIVE",
            "frequency": "WEEKLY",
            "interval": 1,
            "time_of_day": "9:00 AM",
            "timezone": "Australia/Sydney",
            "start_date": date(2026, 10, 1).isoformat(),
            "day_of_week": 3,
            "end_type": "NEVER",
        }
        fields.update(overrides)
        return asyncio.run(store.create_nudge(fields, list(recipients)))

    return _create


@pytest.fixture
def client(store, notifier, settings, session_factory):
    app = FastAPI()
    for module in (cron, complete, nudges, templates):
        app.include_router(module.router, prefix="/api")

    async def override_get_db():
        async with session_factory() as db:
            yield db

    app.dependency_overrides[deps.get_store] = lambda: store
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[config.get_settings] = lambda: settings
    app.dependency_overrides[database.get_db] = override_get_db
    return TestClient(app)
