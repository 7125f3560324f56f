"""Tests for the session registry."""

import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from edge_orchestrator.exceptions import (
    DuplicateSessionError,
    EntryIndexOutOfBoundsError,
    SessionNotFoundError,
    SnapshotVersionError,
)
from edge_orchestrator.models.session import (
    AgentSession,
    BackendKind,
    BackendSession,
    EntryMetadata,
    IssueContext,
    SessionEntry,
    SessionStatus,
    Workspace,
)
from edge_orchestrator.session_registry import SessionRegistry


def make_session(session_id: str, issue_id: str = "issue-1", repository_id: str = "repo-1", **kw):
    return AgentSession(
        id=session_id,
        external_session_id=kw.pop("external_session_id", f"ext-{session_id}"),
        issue_context=IssueContext(
            tracker_id="linear", issue_id=issue_id, issue_identifier="ENG-1"
        ),
        workspace=Workspace(path=f"/tmp/{session_id}"),
        repository_id=repository_id,
        **kw,
    )


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.mark.asyncio
async def test_create_and_get_session(registry):
    session = await registry.create_session(make_session("s1"))

    assert registry.get_session("s1") is session
    assert registry.get_entries("s1") == []
    assert registry.get_session_by_external_id("ext-s1") is session
    assert registry.get_sessions_by_issue_id("issue-1") == [session]


@pytest.mark.asyncio
async def test_create_duplicate_session_raises(registry):
    await registry.create_session(make_session("s1"))

    with pytest.raises(DuplicateSessionError) as exc_info:
        await registry.create_session(make_session("s1"))
    assert exc_info.value.code == "duplicate_session"


@pytest.mark.asyncio
async def test_update_unknown_session_raises(registry):
    with pytest.raises(SessionNotFoundError):
        await registry.update_session("missing", status=SessionStatus.COMPLETE)

    assert registry._locks == {}


@pytest.mark.asyncio
async def test_update_rejects_id_and_unknown_fields(registry):
    await registry.create_session(make_session("s1"))

    with pytest.raises(ValueError):
        await registry.update_session("s1", id="s2")
    with pytest.raises(ValueError):
        await registry.update_session("s1", colour="blue")


@pytest.mark.asyncio
async def test_update_bumps_updated_at_monotonically(registry):
    session = make_session("s1", updated_at=10**15)
    await registry.create_session(session)

    updated = await registry.update_session("s1", status=SessionStatus.PAUSED)

    assert updated.status == SessionStatus.PAUSED
    assert updated.updated_at == 10**15


@pytest.mark.asyncio
async def test_events_published_in_order(registry):
    received = []
    registry.events.subscribe(lambda e: received.append((e.kind, e.session_id)))

    await registry.create_session(make_session("s1"))
    await registry.update_session("s1", status="paused")
    await registry.update_session("s1", status="complete")
    await registry.update_session("s1", status="error")

    assert received == [
        ("session_created", "s1"),
        ("session_updated", "s1"),
        ("session_updated", "s1"),
        ("session_completed", "s1"),
        # complete -> error is not a new completion
        ("session_updated", "s1"),
    ]


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(registry):
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    registry.events.subscribe(broken)
    registry.events.subscribe(lambda e: received.append(e.kind))

    await registry.create_session(make_session("s1"))

    assert received == ["session_created"]


@pytest.mark.asyncio
async def test_unsubscribe(registry):
    received = []
    unsubscribe = registry.events.subscribe(lambda e: received.append(e.kind))
    unsubscribe()
    unsubscribe()

    await registry.create_session(make_session("s1"))

    assert received == []
    assert len(registry.events) == 0


@pytest.mark.asyncio
async def test_add_entry_returns_index(registry):
    await registry.create_session(make_session("s1"))

    first = await registry.add_entry("s1", SessionEntry(type="user", content="hi"))
    second = await registry.add_entry("s1", SessionEntry(type="assistant", content="hello"))

    assert (first, second) == (0, 1)
    assert [e.content for e in registry.get_entries("s1")] == ["hi", "hello"]


@pytest.mark.asyncio
async def test_add_entry_unknown_session_raises(registry):
    with pytest.raises(SessionNotFoundError):
        await registry.add_entry("missing", SessionEntry(type="user", content="hi"))
    with pytest.raises(SessionNotFoundError):
        await registry.update_entry("missing", 0, external_activity_id="a1")

    assert registry._locks == {}


@pytest.mark.asyncio
async def test_update_entry(registry):
    await registry.create_session(make_session("s1"))
    await registry.add_entry("s1", SessionEntry(type="assistant", content="hello"))

    updated = await registry.update_entry(
        "s1", 0, external_activity_id="act-1", metadata=EntryMetadata(is_error=False)
    )

    assert updated.external_activity_id == "act-1"
    assert registry.get_entries("s1")[0].content == "hello"


@pytest.mark.asyncio
async def test_update_entry_out_of_bounds(registry):
    await registry.create_session(make_session("s1"))
    await registry.add_entry("s1", SessionEntry(type="user", content="hi"))

    with pytest.raises(EntryIndexOutOfBoundsError) as exc_info:
        await registry.update_entry("s1", 1, external_activity_id="x")
    assert exc_info.value.length == 1

    with pytest.raises(EntryIndexOutOfBoundsError):
        await registry.update_entry("s1", -1, external_activity_id="x")


@pytest.mark.asyncio
async def test_update_entry_content_is_immutable(registry):
    await registry.create_session(make_session("s1"))
    await registry.add_entry("s1", SessionEntry(type="user", content="hi"))

    with pytest.raises(ValueError):
        await registry.update_entry("s1", 0, content="changed")


@pytest.mark.asyncio
async def test_concurrent_appends_are_not_lost(registry):
    await registry.create_session(make_session("s1"))
    await registry.create_session(make_session("s2"))

    await asyncio.gather(
        *[
            registry.add_entry(sid, SessionEntry(type="user", content=str(i)))
            for i in range(50)
            for sid in ("s1", "s2")
        ]
    )

    assert len(registry.get_entries("s1")) == 50
    assert len(registry.get_entries("s2")) == 50


@pytest.mark.asyncio
async def test_parent_child_links(registry):
    for sid in ("parent", "child-a", "child-b"):
        await registry.create_session(make_session(sid))
    registry.set_parent_session("child-a", "parent")
    registry.set_parent_session("child-b", "parent")

    assert registry.get_parent_session_id("child-a") == "parent"
    assert sorted(registry.get_child_session_ids("parent")) == ["child-a", "child-b"]

    with pytest.raises(ValueError):
        registry.set_parent_session("parent", "parent")


@pytest.mark.asyncio
async def test_has_active_session(registry):
    await registry.create_session(make_session("s1", issue_id="i1", repository_id="r1"))

    assert registry.has_active_session("i1", "r1")
    assert not registry.has_active_session("i1", "r2")

    await registry.update_session("s1", status=SessionStatus.COMPLETE)
    assert not registry.has_active_session("i1", "r1")


@pytest.mark.asyncio
async def test_serialize_excludes_runner(registry):
    await registry.create_session(make_session("s1"))
    await registry.update_session("s1", runner=object())

    snapshot = registry.serialize_state()

    assert snapshot["version"] == "3.0"
    assert "runner" not in snapshot["sessions"]["s1"]


@pytest.mark.asyncio
async def test_restore_replaces_previous_state(registry):
    await registry.create_session(make_session("old"))
    other = SessionRegistry()
    await other.create_session(make_session("new"))

    registry.restore_state(other.serialize_state())

    assert registry.get_session("old") is None
    assert registry.get_session("new") is not None


def test_restore_rejects_unknown_version(registry):
    with pytest.raises(SnapshotVersionError):
        registry.restore_state(
            {"version": "2.0", "sessions": {}, "entries": {}, "child_to_parent_map": {}}
        )


@pytest.mark.asyncio
async def test_cleanup_is_idempotent(registry):
    await registry.create_session(make_session("stale", updated_at=1))
    await registry.create_session(make_session("fresh"))

    assert await registry.cleanup(60_000) == 1
    assert await registry.cleanup(60_000) == 0
    assert registry.get_session("stale") is None
    assert registry.get_session("fresh") is not None


@pytest.mark.asyncio
async def test_cleanup_removes_edges(registry):
    await registry.create_session(make_session("parent", updated_at=1))
    await registry.create_session(make_session("child"))
    registry.set_parent_session("child", "parent")

    await registry.cleanup(60_000)

    assert registry.get_parent_session_id("child") is None


# ----------------------------------------------------------------------
# Properties
# ----------------------------------------------------------------------

session_ids = st.lists(
    st.text(alphabet="abcdefghij", min_size=1, max_size=4), min_size=1, max_size=6, unique=True
)


@st.composite
def registry_operations(draw):
    ids = draw(session_ids)
    entries = draw(
        st.lists(
            st.tuples(
                st.sampled_from(ids),
                st.sampled_from(["user", "assistant", "system", "result"]),
                st.text(max_size=20),
            ),
            max_size=15,
        )
    )
    edges = draw(
        st.lists(st.tuples(st.sampled_from(ids), st.sampled_from(ids)), max_size=6)
    )
    backends = draw(
        st.dictionaries(st.sampled_from(ids), st.sampled_from(list(BackendKind)), max_size=3)
    )
    return ids, entries, [(c, p) for c, p in edges if c != p], backends


async def build_registry(ids, entries, edges, backends) -> SessionRegistry:
    registry = SessionRegistry()
    for sid in ids:
        backend_session = None
        if sid in backends:
            backend_session = BackendSession(backend=backends[sid], session_id=f"native-{sid}")
        await registry.create_session(make_session(sid, backend_session=backend_session))
    for sid, entry_type, content in entries:
        await registry.add_entry(sid, SessionEntry(type=entry_type, content=content))
    for child, parent in edges:
        registry.set_parent_session(child, parent)
    return registry


@settings(max_examples=50)
@given(registry_operations())
def test_round_trip_property(operations):
    async def scenario():
        source = await build_registry(*operations)
        restored = SessionRegistry()
        restored.restore_state(source.serialize_state())

        assert restored.sessions.keys() == source.sessions.keys()
        for sid, session in source.sessions.items():
            assert restored.get_session(sid).model_dump() == session.model_dump()
            assert restored.get_entries(sid) == source.get_entries(sid)
            assert restored.get_parent_session_id(sid) == source.get_parent_session_id(sid)
            assert sorted(restored.get_child_session_ids(sid)) == sorted(
                source.get_child_session_ids(sid)
            )

    asyncio.run(scenario())


@settings(max_examples=50)
@given(registry_operations(), st.data())
def test_delete_leaves_no_dangling_edges(operations, data):
    ids = operations[0]
    victim = data.draw(st.sampled_from(ids))

    async def scenario():
        registry = await build_registry(*operations)
        await registry.delete_session(victim)

        assert registry.get_parent_session_id(victim) is None
        assert registry.get_child_session_ids(victim) == []
        assert victim not in registry.child_to_parent.values()
        assert registry.get_entries(victim) == []

    asyncio.run(scenario())
