"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.pool import NullPool

from reviewflow import db
from reviewflow.broadcast import ConversationBroadcaster
from reviewflow.service import ConversationService
from reviewflow.telemetry import Telemetry

WORKSPACE_A = "11111111-1111-4111-8111-111111111111"
WORKSPACE_B = "22222222-2222-4222-8222-222222222222"


@dataclass
class Seed:
    alice: str
    bob: str
    carol: str
    project: str
    task: str


class RecordingTelemetry(Telemetry):
    """Telemetry sink that keeps every recorded fact for assertions."""

    def __init__(self) -> None:
        super().__init__(enabled=True)
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.on_event(lambda name, attrs: self.events.append((name, attrs)))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite database unique to each test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'reviewflow.db'}"


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[None]:
    db.configure_engine(database_url, poolclass=NullPool)
    await db.init_db()
    yield
    await db.dispose_engine()


@pytest_asyncio.fixture
async def seed(engine: None) -> Seed:
    async with db.get_session() as session:
        alice = await db.create_user(session, "alice", display_name="Alice")
        bob = await db.create_user(session, "bob")
        carol = await db.create_user(session, "carol", avatar_url="https://example.test/c.png")
        project = await db.create_project(session, "core", min_approvals_required=2)
        task = await db.create_task(session, project, "Ship review threads")
        return Seed(
            alice=alice.id,
            bob=bob.id,
            carol=carol.id,
            project=project.id,
            task=task.id,
        )


@pytest.fixture
def broadcaster() -> ConversationBroadcaster:
    return ConversationBroadcaster(capacity=16)


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def service(
    engine: None, broadcaster: ConversationBroadcaster, telemetry: RecordingTelemetry
) -> ConversationService:
    return ConversationService(broadcaster=broadcaster, telemetry=telemetry)
