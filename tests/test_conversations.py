import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import delete

from reviewflow import conversations, db
from reviewflow.errors import (
    AlreadyResolvedError,
    MessageNotFoundError,
    NotFoundError,
    StorageFailure,
    ValidationError,
)
from reviewflow.models import User

WORKSPACE = str(uuid4())


async def _create(session, *, line: int = 10, side: str = "new", message: str = "Why?", user=None):
    return await conversations.create_conversation(
        session, WORKSPACE, "src/app.py", line, side, "x = 1", message, user
    )


@pytest.mark.asyncio
async def test_create_conversation_with_first_message(seed) -> None:
    async with db.get_session() as session:
        conv = await _create(session, user=seed.alice)
        cid = conv.id

    async with db.get_session() as session:
        full = await conversations.load_conversation_with_messages(session, cid)

    assert full is not None
    assert full.workspace_id == WORKSPACE
    assert full.side == "new"
    assert full.code_line == "x = 1"
    assert full.is_resolved is False
    assert [m.content for m in full.messages] == ["Why?"]
    assert full.messages[0].author is not None
    assert full.messages[0].author.display_name == "Alice"


@pytest.mark.asyncio
@pytest.mark.parametrize("message", ["", "   \n\t"])
async def test_create_rejects_blank_initial_message(engine, message: str) -> None:
    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            await _create(session, message=message)

    async with db.get_session() as session:
        assert await conversations.get_conversations(session, WORKSPACE) == []


@pytest.mark.asyncio
async def test_create_rejects_bad_anchor(engine) -> None:
    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            await _create(session, line=0)
    with pytest.raises(ValidationError):
        async with db.get_session() as session:
            await _create(session, side="middle")


@pytest.mark.asyncio
async def test_messages_are_ordered_by_creation(engine) -> None:
    async with db.get_session() as session:
        conv = await _create(session, message="first")
        await conversations.add_message(session, conv.id, "second")
        await conversations.add_message(session, conv.id, "third")
        cid = conv.id

    async with db.get_session() as session:
        messages = await conversations.get_messages(session, cid)
        assert [m.content for m in messages] == ["first", "second", "third"]
        assert await conversations.count_messages(session, cid) == 3


@pytest.mark.asyncio
async def test_resolve_sets_all_resolution_fields(seed) -> None:
    async with db.get_session() as session:
        cid = (await _create(session)).id

    async with db.get_session() as session:
        await conversations.resolve_conversation(session, cid, "Fixed in abc123", seed.bob)

    async with db.get_session() as session:
        full = await conversations.load_conversation_with_messages(session, cid)
    assert full.is_resolved is True
    assert full.resolved_at is not None
    assert full.resolved_by_user_id == seed.bob
    assert full.resolved_by is not None and full.resolved_by.username == "bob"
    assert full.resolution_summary == "Fixed in abc123"


@pytest.mark.asyncio
async def test_resolve_twice_reports_not_found(engine) -> None:
    async with db.get_session() as session:
        cid = (await _create(session)).id
    async with db.get_session() as session:
        await conversations.resolve_conversation(session, cid, "done")

    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await conversations.resolve_conversation(session, cid, "again")


@pytest.mark.asyncio
async def test_concurrent_resolves_have_one_winner(engine) -> None:
    async with db.get_session() as session:
        cid = (await _create(session)).id

    async def attempt(summary: str) -> str:
        try:
            async with db.get_session() as session:
                await conversations.resolve_conversation(session, cid, summary)
        except NotFoundError:
            return "lost"
        return "won"

    outcomes = await asyncio.gather(*(attempt(f"summary {i}") for i in range(4)))
    assert sorted(outcomes) == ["lost", "lost", "lost", "won"]


@pytest.mark.asyncio
async def test_unresolve_clears_resolution_and_tolerates_open(seed) -> None:
    async with db.get_session() as session:
        cid = (await _create(session)).id
        await conversations.resolve_conversation(session, cid, "ok", seed.alice)

    async with db.get_session() as session:
        conv = await conversations.unresolve_conversation(session, cid)
        assert conv.is_resolved is False
        assert conv.resolved_at is None
        assert conv.resolved_by_user_id is None
        assert conv.resolution_summary is None

    async with db.get_session() as session:
        conv = await conversations.unresolve_conversation(session, cid)
        assert conv.is_resolved is False


@pytest.mark.asyncio
async def test_resolved_conversation_is_read_only(engine) -> None:
    async with db.get_session() as session:
        conv = await _create(session)
        cid = conv.id
        mid = (await conversations.get_messages(session, cid))[0].id
        await conversations.resolve_conversation(session, cid, "ok")

    with pytest.raises(AlreadyResolvedError):
        async with db.get_session() as session:
            await conversations.add_message(session, cid, "late reply")
    with pytest.raises(AlreadyResolvedError):
        async with db.get_session() as session:
            await conversations.delete_message(session, cid, mid)
    with pytest.raises(AlreadyResolvedError):
        async with db.get_session() as session:
            await conversations.update_message(session, cid, mid, "edited")


@pytest.mark.asyncio
async def test_add_message_to_missing_conversation(engine) -> None:
    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await conversations.add_message(session, str(uuid4()), "hello")


@pytest.mark.asyncio
async def test_update_message_changes_content(engine) -> None:
    async with db.get_session() as session:
        cid = (await _create(session, message="tpyo")).id
        mid = (await conversations.get_messages(session, cid))[0].id

    async with db.get_session() as session:
        await conversations.update_message(session, cid, mid, "typo")

    async with db.get_session() as session:
        message = await conversations.get_message(session, mid)
        assert message.content == "typo"


@pytest.mark.asyncio
async def test_delete_message_from_other_conversation(engine) -> None:
    async with db.get_session() as session:
        first = await _create(session, line=1)
        second = await _create(session, line=2)
        foreign_mid = (await conversations.get_messages(session, second.id))[0].id
        first_id = first.id

    with pytest.raises(MessageNotFoundError):
        async with db.get_session() as session:
            await conversations.delete_message(session, first_id, foreign_mid)


@pytest.mark.asyncio
async def test_deleting_last_message_deletes_conversation(engine) -> None:
    async with db.get_session() as session:
        conv = await _create(session, message="only")
        await conversations.add_message(session, conv.id, "reply")
        cid = conv.id
        first, second = await conversations.get_messages(session, cid)

    async with db.get_session() as session:
        assert await conversations.delete_message(session, cid, second.id) is False
    async with db.get_session() as session:
        assert await conversations.delete_message(session, cid, first.id) is True

    async with db.get_session() as session:
        assert await conversations.get_conversation(session, cid) is None
        assert await conversations.get_message(session, first.id) is None


@pytest.mark.asyncio
async def test_delete_conversation_cascades_messages(engine) -> None:
    async with db.get_session() as session:
        conv = await _create(session)
        await conversations.add_message(session, conv.id, "reply")
        cid = conv.id
        mids = [m.id for m in await conversations.get_messages(session, cid)]

    async with db.get_session() as session:
        await conversations.delete_conversation(session, cid)

    async with db.get_session() as session:
        for mid in mids:
            assert await conversations.get_message(session, mid) is None

    with pytest.raises(NotFoundError):
        async with db.get_session() as session:
            await conversations.delete_conversation(session, cid)


@pytest.mark.asyncio
async def test_listing_filters(engine) -> None:
    async with db.get_session() as session:
        open_conv = await _create(session, line=30)
        closed_conv = await _create(session, line=5)
        await conversations.resolve_conversation(session, closed_conv.id, "done")
        await conversations.create_conversation(
            session, str(uuid4()), "src/app.py", 1, "old", None, "elsewhere"
        )
        await conversations.create_conversation(
            session, WORKSPACE, "README.md", 2, "old", None, "docs"
        )
        open_id, closed_id = open_conv.id, closed_conv.id

    async with db.get_session() as session:
        everything = await conversations.get_conversations(session, WORKSPACE)
        unresolved = await conversations.get_unresolved_conversations(session, WORKSPACE)
        by_file = await conversations.get_conversations_by_file_path(
            session, WORKSPACE, "src/app.py"
        )

    assert len(everything) == 3
    assert closed_id not in {c.id for c in unresolved}
    assert open_id in {c.id for c in unresolved}
    assert [c.line_number for c in by_file] == [5, 30]


@pytest.mark.asyncio
async def test_deleted_author_leaves_anonymous_message(seed) -> None:
    async with db.get_session() as session:
        cid = (await _create(session, user=seed.carol)).id

    async with db.get_session() as session:
        await session.execute(delete(User).where(User.id == seed.carol))

    async with db.get_session() as session:
        full = await conversations.load_conversation_with_messages(session, cid)
    assert full.messages[0].user_id is None
    assert full.messages[0].author is None


@pytest.mark.asyncio
async def test_missing_schema_surfaces_as_storage_failure(database_url: str) -> None:
    db.configure_engine(database_url)
    try:
        with pytest.raises(StorageFailure) as excinfo:
            async with db.get_session() as session:
                await conversations.get_conversations(session, WORKSPACE)
        assert "init-db" in str(excinfo.value)
    finally:
        await db.dispose_engine()
