from datetime import timedelta

import pytest

from services.reflection_engine.hub import SessionHub
from services.reflection_engine.models import SessionNotFoundError, SessionStatus, TemplateNotFoundError
from services.reflection_engine.registry import TemplateRegistry, load_template_data


@pytest.fixture
def hub(registry, draft_store, controller, clock):
    return SessionHub(registry, draft_store, controller, clock=clock)


async def _submit(machine):
    await machine.edit_field("topic", "Planning")
    assert await machine.next_step()
    await machine.edit_field("score", 8)
    await machine.edit_field("lesson", "ship smaller changes")
    await machine.complete()
    assert machine.status == SessionStatus.SUBMITTED


@pytest.mark.asyncio
async def test_open_reuses_live_machine(hub):
    first = await hub.open("two_step", owner="user-1")
    await first.edit_field("topic", "Planning")
    second = await hub.open("two_step", owner="user-1")
    assert second is first
    assert len(hub) == 1


@pytest.mark.asyncio
async def test_open_unknown_template(hub):
    with pytest.raises(TemplateNotFoundError):
        await hub.open("nope")


@pytest.mark.asyncio
async def test_get_rebuilds_from_draft(registry, draft_store, controller, clock, hub):
    machine = await hub.open("two_step", owner="user-1")
    await machine.edit_field("topic", "Planning")
    sid = machine.session.session_id

    # A second process sharing the draft store.
    other = SessionHub(registry, draft_store, controller, clock=clock)
    rebuilt = await other.get(sid)
    assert rebuilt is not None
    assert rebuilt.session.owner == "user-1"
    assert rebuilt.session.answers == {"topic": "Planning"}
    assert await other.get("missing") is None


@pytest.mark.asyncio
async def test_discard_deletes_draft(hub, draft_store):
    machine = await hub.open("two_step", owner="user-1")
    await machine.edit_field("topic", "Planning")
    sid = machine.session.session_id

    await hub.discard(sid)

    assert sid not in draft_store
    assert await hub.get(sid) is None
    assert len(hub) == 0


@pytest.mark.asyncio
async def test_open_by_id_is_limited_to_owner(hub):
    machine = await hub.open("two_step", owner="user-1")
    await machine.edit_field("topic", "Planning")
    sid = machine.session.session_id

    assert await hub.open("two_step", owner="user-1", session_id=sid) is machine
    with pytest.raises(SessionNotFoundError):
        await hub.open("two_step", owner="user-2", session_id=sid)
    assert (await hub.get(sid)).session.owner == "user-1"


@pytest.mark.asyncio
async def test_open_by_id_is_limited_to_template(two_step_template, draft_store, controller, clock):
    other = load_template_data({
        "id": "one_step",
        "title": "One Step",
        "steps": [{"id": "only", "title": "Only", "fields": [{"id": "note", "label": "Note"}]}],
    })
    hub = SessionHub(TemplateRegistry([two_step_template, other]), draft_store, controller, clock=clock)
    machine = await hub.open("two_step", owner="user-1")
    await machine.edit_field("topic", "Planning")
    sid = machine.session.session_id

    with pytest.raises(SessionNotFoundError):
        await hub.open("one_step", owner="user-1", session_id=sid)

    # Also refused when the session is only in the draft store.
    fresh = SessionHub(hub.registry, draft_store, controller, clock=clock)
    with pytest.raises(SessionNotFoundError):
        await fresh.open("one_step", owner="user-1", session_id=sid)
    assert (await draft_store.load(sid)).template_id == "two_step"


@pytest.mark.asyncio
async def test_open_unknown_session_id(hub):
    with pytest.raises(SessionNotFoundError):
        await hub.open("two_step", owner="user-1", session_id="no-such-session")
    assert len(hub) == 0


@pytest.mark.asyncio
async def test_submitted_sessions_are_kept_up_to_a_limit(registry, draft_store, controller, clock):
    hub = SessionHub(registry, draft_store, controller, clock=clock, max_finished=1)
    first = await hub.open("two_step", owner="user-1")
    await _submit(first)
    second = await hub.open("two_step", owner="user-1")
    assert second is not first
    await _submit(second)

    assert await hub.get(second.session.session_id) is second
    assert await hub.get(first.session.session_id) is None
    assert len(hub) == 1


@pytest.mark.asyncio
async def test_idle_machines_are_dropped_and_rebuilt(registry, draft_store, controller, clock):
    hub = SessionHub(registry, draft_store, controller, clock=clock, idle_timeout=timedelta(minutes=5))
    machine = await hub.open("two_step", owner="user-1")
    await machine.edit_field("topic", "Planning")
    sid = machine.session.session_id

    clock.now += timedelta(hours=1)
    rebuilt = await hub.get(sid)

    assert rebuilt is not machine
    assert rebuilt.session.answers == {"topic": "Planning"}
    assert len(hub) == 1
