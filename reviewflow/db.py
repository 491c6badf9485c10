"""Async database connection and collaborator operations (users, projects, tasks)."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, event, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import settings
from .errors import (
    ReviewflowError,
    SchemaNotInitializedError,
    StorageFailure,
    ValidationError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import Base, Project, Task, TaskStatus, User, utcnow

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def configure_engine(url: str | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """(Re)create the process-wide async engine and session factory."""
    global _engine, _session_factory

    url = url or settings.async_database_url
    if url.startswith("sqlite"):
        engine_kwargs.setdefault("connect_args", {"timeout": 30})
    else:
        engine_kwargs.setdefault("pool_pre_ping", True)

    _engine = create_async_engine(url, echo=False, **engine_kwargs)
    if _engine.dialect.name == "sqlite":
        event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return configure_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        configure_engine()
    assert _session_factory is not None
    return _session_factory


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions.

    Commits on clean exit. Driver errors are rolled back and re-raised as
    ``StorageFailure`` so callers never see raw SQLAlchemy exceptions.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except ReviewflowError:
            await session.rollback()
            raise
        except SQLAlchemyError as exc:
            await session.rollback()
            if is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise StorageFailure(f"Database operation failed: {exc}") from exc
        except BaseException:
            await session.rollback()
            raise


# =============================================================================
# User Operations
# =============================================================================


async def get_user_by_id(session: AsyncSession, user_id: str) -> User | None:
    """Look up a user by id. This is the user directory used for hydration."""
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    username: str,
    *,
    email: str | None = None,
    display_name: str | None = None,
    avatar_url: str | None = None,
) -> User:
    user = User(
        username=username,
        email=email,
        display_name=display_name,
        avatar_url=avatar_url,
    )
    session.add(user)
    await session.flush()
    return user


# =============================================================================
# Project Operations
# =============================================================================


async def get_project_by_id(session: AsyncSession, project_id: str) -> Project | None:
    result = await session.execute(
        select(Project).where(Project.id == project_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_project(
    session: AsyncSession,
    name: str,
    min_approvals_required: int | None = None,
) -> Project:
    """Create a project. The quorum defaults to ``settings.default_min_approvals``."""
    if min_approvals_required is None:
        min_approvals_required = settings.default_min_approvals
    if min_approvals_required < 0:
        raise ValidationError("min_approvals_required must be >= 0")

    project = Project(name=name, min_approvals_required=min_approvals_required)
    session.add(project)
    await session.flush()
    return project


async def set_min_approvals_required(
    session: AsyncSession, project_id: str, min_approvals_required: int
) -> int:
    """Change a project's quorum. Returns the number of rows updated."""
    if min_approvals_required < 0:
        raise ValidationError("min_approvals_required must be >= 0")

    result = await session.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(min_approvals_required=min_approvals_required, updated_at=utcnow())
    )
    return result.rowcount


# =============================================================================
# Task Operations
# =============================================================================


async def get_task_by_id(session: AsyncSession, task_id: str) -> Task | None:
    """Get a task by its ID."""
    result = await session.execute(
        select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_task(
    session: AsyncSession,
    project: Project,
    title: str,
    *,
    description: str | None = None,
    status: TaskStatus = TaskStatus.TODO,
) -> Task:
    """Create a new task."""
    task = Task(
        project_id=project.id,
        title=title,
        description=description,
        status=status.value,
    )
    session.add(task)
    await session.flush()
    return task


async def delete_task(session: AsyncSession, task_id: str) -> int:
    """Delete a task. Its approvals go with it via ON DELETE CASCADE."""
    result = await session.execute(delete(Task).where(Task.id == task_id))
    return result.rowcount
