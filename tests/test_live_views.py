from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from itertools import count
from pathlib import Path

import pytest

from teamspace.errors import TransientStoreError
from teamspace.notifications import AckResult
from teamspace.realtime.feed import ChangeEvent, ChangeFeed
from teamspace.realtime.reconcile import LiveChatView, LiveNotificationView
from teamspace.schemas import ChatMessageOut, EventNotice, FileUploadNotice, NotificationFeed

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
_seq = count(1)


def _t(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def ev(table, op="insert", **row):
    return ChangeEvent(seq=next(_seq), table=table, op=op, row=row)


def upload(project_id, name, actor="a", minutes=0, folder="docs"):
    return FileUploadNotice(
        project_id=project_id, folder=folder, file_name=name, uploaded_by=actor, uploaded_at=_t(minutes)
    )


def event_notice(project_id, event_id, minutes=0, starts_at=None):
    return EventNotice(
        id=f"evn_{event_id}",
        project_id=project_id,
        event_id=event_id,
        topic="Standup",
        created_by="a",
        created_at=_t(minutes),
        starts_at=starts_at,
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class ScriptedNotifications:
    """Serves canned feeds; a gate per scope holds the response back."""

    def __init__(self):
        self.responses = {}
        self.gates = {}
        self.calls = []
        self.ack_calls = []
        self.ack_gate = None
        self.fail_acks = False

    async def fetch_feed(self, viewer, project_id=None):
        self.calls.append(project_id)
        result = self.responses.get(project_id) or NotificationFeed(viewer=viewer, project_id=project_id)
        gate = self.gates.get(project_id)
        if gate is not None:
            await gate.wait()
        return result

    async def _ack(self, *args):
        self.ack_calls.append(args)
        if self.ack_gate is not None:
            await self.ack_gate.wait()
        if self.fail_acks:
            raise TransientStoreError("Could not acknowledge event")
        return AckResult(changed=True)

    async def mark_event_read(self, event_id, viewer, project_id):
        return await self._ack(event_id, viewer, project_id)

    async def mark_mention_read(self, mention_id, viewer):
        return await self._ack(mention_id, viewer)


def test_push_events_converge_regardless_of_order_and_repeats():
    async def scenario():
        view = LiveNotificationView("b", ScriptedNotifications(), ChangeFeed())
        await view.open("p1")

        first = ev("audit_records", id="aud_1", project_id="p1", folder="docs",
                   subject_name="plan.pdf", action="upload", actor="a", acted_at=_t(0))
        view.apply(first)
        view.apply(first)
        view.apply(ev("audit_records", id="aud_x", project_id="p2", folder="docs",
                      subject_name="other.pdf", action="upload", actor="a", acted_at=_t(0)))
        view.apply(ev("audit_records", id="aud_2", project_id="p1", folder="docs",
                      subject_name="mine.pdf", action="upload", actor="b", acted_at=_t(0)))
        assert [item.file_name for item in view.uploads] == ["plan.pdf"]

        view.apply(ev("audit_memberships", project_id="p1", record_id="aud_3", action="preview",
                      subject_name="plan.pdf", username="b", acted_at=_t(1)))
        view.apply(first)
        assert view.uploads == ()

        view.apply(ev("audit_records", id="aud_5", project_id="p1", folder="docs",
                      subject_name="x.txt", action="delete", actor="a", acted_at=_t(3)))
        view.apply(ev("audit_records", id="aud_4", project_id="p1", folder="docs",
                      subject_name="x.txt", action="upload", actor="a", acted_at=_t(2)))
        assert view.uploads == ()
        view.apply(ev("audit_records", id="aud_6", project_id="p1", folder="docs",
                      subject_name="x.txt", action="upload", actor="c", acted_at=_t(4)))
        assert [(item.file_name, item.uploaded_by) for item in view.uploads] == [("x.txt", "c")]

        view.apply(ev("event_notifications", "update", id="evn_1", project_id="p1", event_id="evt_1",
                      topic="Standup", username="b", created_by="a", created_at=_t(5), read=True))
        view.apply(ev("event_notifications", id="evn_1", project_id="p1", event_id="evt_1",
                      topic="Standup", username="b", created_by="a", created_at=_t(5), read=False))
        view.apply(ev("event_notifications", id="evn_2", project_id="p1", event_id="evt_2",
                      topic="Retro", username="b", created_by="a", created_at=_t(6), read=False))
        assert [item.event_id for item in view.events] == ["evt_2"]
        view.apply(ev("project_events", "update", id="evt_2", project_id="p1", is_deleted=True))
        view.apply(ev("event_notifications", id="evn_2", project_id="p1", event_id="evt_2",
                      topic="Retro", username="b", created_by="a", created_at=_t(6), read=False))
        assert view.events == ()

        mention = ev("chat_mentions", id="men_1", project_id="p1", message_id="msg_1", mentioned_by="a",
                     mentioned_user="b", message="@b look", created_at=_t(7), read=False)
        view.apply(mention)
        view.apply(mention)
        assert [item.id for item in view.mentions] == ["men_1"]
        assert view.unread_count == 2

        await view.close()

    asyncio.run(scenario())


def test_folder_deletion_hides_earlier_uploads_in_that_folder():
    async def scenario():
        view = LiveNotificationView("b", ScriptedNotifications(), ChangeFeed())
        await view.open("p1")
        view.apply(ev("audit_records", id="aud_2", project_id="p1", folder="docs",
                      subject_name=None, action="folder_deleted", actor="a", acted_at=_t(5)))
        view.apply(ev("audit_records", id="aud_1", project_id="p1", folder="docs",
                      subject_name="plan.pdf", action="upload", actor="a", acted_at=_t(1)))
        view.apply(ev("audit_records", id="aud_3", project_id="p1", folder="other",
                      subject_name="plan.pdf", action="upload", actor="a", acted_at=_t(1)))
        assert [item.folder for item in view.uploads] == ["other"]
        await view.close()

    asyncio.run(scenario())


def test_result_for_previous_scope_is_discarded():
    async def scenario():
        client = ScriptedNotifications()
        client.responses["p1"] = NotificationFeed(viewer="b", project_id="p1", uploads=(upload("p1", "old.pdf"),))
        client.responses["p2"] = NotificationFeed(viewer="b", project_id="p2", uploads=(upload("p2", "new.pdf"),))
        client.gates["p1"] = asyncio.Event()
        view = LiveNotificationView("b", client, ChangeFeed())

        opening = asyncio.create_task(view.open("p1"))
        await wait_until(lambda: "p1" in client.calls)
        await view.open("p2")
        client.gates["p1"].set()
        await opening

        assert view.scope == "p2"
        assert [(item.project_id, item.file_name) for item in view.uploads] == [("p2", "new.pdf")]
        await view.close()

    asyncio.run(scenario())


def test_superseded_pass_is_discarded():
    async def scenario():
        client = ScriptedNotifications()
        view = LiveNotificationView("b", client, ChangeFeed())
        await view.open("p1")

        gate = asyncio.Event()
        client.gates["p1"] = gate
        client.responses["p1"] = NotificationFeed(viewer="b", project_id="p1", uploads=(upload("p1", "stale.pdf"),))
        slow = asyncio.create_task(view.refresh())
        await wait_until(lambda: len(client.calls) == 2)

        del client.gates["p1"]
        client.responses["p1"] = NotificationFeed(viewer="b", project_id="p1", uploads=(upload("p1", "fresh.pdf"),))
        assert await view.refresh() is True
        gate.set()

        assert await slow is False
        assert [item.file_name for item in view.uploads] == ["fresh.pdf"]
        await view.close()

    asyncio.run(scenario())


def test_events_during_refresh_are_replayed_over_the_snapshot():
    async def scenario():
        client = ScriptedNotifications()
        view = LiveNotificationView("b", client, ChangeFeed())
        await view.open("p1")

        gate = asyncio.Event()
        client.gates["p1"] = gate
        client.responses["p1"] = NotificationFeed(viewer="b", project_id="p1", uploads=(upload("p1", "plan.pdf"),))
        pending = asyncio.create_task(view.refresh())
        await wait_until(lambda: len(client.calls) == 2)
        view.apply(ev("audit_memberships", project_id="p1", record_id="aud_9", action="download",
                      subject_name="plan.pdf", username="b", acted_at=_t(1)))
        view.apply(ev("audit_records", id="aud_8", project_id="p1", folder="docs",
                      subject_name="late.pdf", action="upload", actor="c", acted_at=_t(2)))
        gate.set()

        assert await pending is True
        assert [item.file_name for item in view.uploads] == ["late.pdf"]
        await view.close()

    asyncio.run(scenario())


def test_acknowledgement_is_optimistic_and_restored_on_failure():
    async def scenario():
        client = ScriptedNotifications()
        client.responses["p1"] = NotificationFeed(
            viewer="b", project_id="p1", events=(event_notice("p1", "evt_1"),)
        )
        view = LiveNotificationView("b", client, ChangeFeed())
        await view.open("p1")
        assert view.unread_count == 1

        client.fail_acks = True
        client.ack_gate = asyncio.Event()
        acking = asyncio.create_task(view.acknowledge_event("evt_1"))
        await wait_until(lambda: client.ack_calls)
        assert view.events == ()
        assert await view.refresh() is True
        assert view.events == ()

        client.ack_gate.set()
        with pytest.raises(TransientStoreError):
            await acking
        assert [item.event_id for item in view.events] == ["evt_1"]

        client.fail_acks = False
        client.ack_gate = None
        result = await view.acknowledge_event("evt_1")
        assert result.changed
        assert client.ack_calls[-1] == ("evt_1", "b", "p1")
        assert view.events == ()
        client.responses["p1"] = NotificationFeed(viewer="b", project_id="p1")
        await view.refresh()
        assert view.events == ()
        assert view.unread_count == 0
        await view.close()

    asyncio.run(scenario())


def test_snapshot_replaces_facts_learned_from_push_events():
    async def scenario():
        client = ScriptedNotifications()
        view = LiveNotificationView("b", client, ChangeFeed())
        await view.open("p1")

        view.apply(ev("audit_memberships", project_id="p1", record_id="aud_2", action="preview",
                      subject_name="plan.pdf", username="b", acted_at=_t(1)))
        view.apply(ev("event_notifications", "update", id="evn_1", project_id="p1", event_id="evt_1",
                      topic="Standup", username="b", created_by="a", created_at=_t(2), read=True))
        view.apply(ev("audit_records", id="aud_3", project_id="p1", folder="docs",
                      subject_name="plan.pdf", action="upload", actor="a", acted_at=_t(3)))
        assert view.uploads == ()

        client.responses["p1"] = NotificationFeed(
            viewer="b",
            project_id="p1",
            uploads=(upload("p1", "plan.pdf", minutes=3),),
            events=(event_notice("p1", "evt_1", minutes=2),),
        )
        assert await view.refresh() is True
        assert [item.file_name for item in view.uploads] == ["plan.pdf"]
        assert [item.event_id for item in view.events] == ["evt_1"]
        await view.close()

    asyncio.run(scenario())


def test_acknowledgement_confirmed_during_a_pass_stays_hidden():
    async def scenario():
        client = ScriptedNotifications()
        stale = NotificationFeed(viewer="b", project_id="p1", events=(event_notice("p1", "evt_1"),))
        client.responses["p1"] = stale
        view = LiveNotificationView("b", client, ChangeFeed())
        await view.open("p1")

        gate = asyncio.Event()
        client.gates["p1"] = gate
        pending = asyncio.create_task(view.refresh())
        await wait_until(lambda: len(client.calls) == 2)
        assert (await view.acknowledge_event("evt_1")).changed
        gate.set()

        assert await pending is True
        assert view.events == ()

        del client.gates["p1"]
        client.responses["p1"] = NotificationFeed(viewer="b", project_id="p1")
        assert await view.refresh() is True
        client.responses["p1"] = stale
        assert await view.refresh() is True
        assert [item.event_id for item in view.events] == ["evt_1"]
        await view.close()

    asyncio.run(scenario())


def test_event_acknowledgement_needs_a_project_in_global_scope():
    async def scenario():
        view = LiveNotificationView("b", ScriptedNotifications(), ChangeFeed())
        await view.open()
        with pytest.raises(ValueError):
            await view.acknowledge_event("evt_unknown")
        await view.close()

    asyncio.run(scenario())


def test_past_events_do_not_count_live():
    async def scenario():
        now = _t(60)
        client = ScriptedNotifications()
        client.responses["p1"] = NotificationFeed(
            viewer="b",
            project_id="p1",
            events=(
                event_notice("p1", "evt_past", starts_at=now - timedelta(minutes=5)),
                event_notice("p1", "evt_next", minutes=1, starts_at=now + timedelta(minutes=5)),
            ),
        )
        view = LiveNotificationView("b", client, ChangeFeed(), clock=lambda: now)
        await view.open("p1")
        assert len(view.events) == 2
        assert view.unread_count == 1
        await view.close()

    asyncio.run(scenario())


def test_periodic_reconciliation_survives_transient_failures():
    async def scenario():
        client = ScriptedNotifications()
        view = LiveNotificationView("b", client, ChangeFeed())
        await view.open("p1")
        original = client.fetch_feed

        async def flaky(viewer, project_id=None):
            if len(client.calls) == 2:
                client.calls.append(project_id)
                raise TransientStoreError("down")
            return await original(viewer, project_id)

        client.fetch_feed = flaky
        ticker = asyncio.create_task(view.run_periodic(0.01))
        await wait_until(lambda: len(client.calls) >= 4)
        ticker.cancel()
        with pytest.raises(asyncio.CancelledError):
            await ticker
        await view.close()

    asyncio.run(scenario())


@pytest.fixture()
def store(monkeypatch):
    monkeypatch.syspath_prepend(str(Path(__file__).resolve().parents[1]))
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    from teamspace.db import init_db

    init_db()


def test_live_feed_tracks_the_store(store):
    from teamspace.notifications import NotificationService
    from teamspace.realtime.reconcile import LocalNotificationClient
    from tests.factories import at, make_project, record

    feed = ChangeFeed()
    service = NotificationService(feed=feed)
    project = make_project(feed=feed)

    async def scenario():
        view = LiveNotificationView("b", LocalNotificationClient(service), feed)
        await view.open(project.id)
        assert view.uploads == ()

        await asyncio.to_thread(record, project.id, "upload", "a", when=at(0), feed=feed)
        await wait_until(lambda: len(view.uploads) == 1)
        await asyncio.to_thread(record, project.id, "preview", "b", when=at(1), feed=feed)
        await wait_until(lambda: view.uploads == ())
        await asyncio.to_thread(record, project.id, "upload", "c", name="notes.txt", when=at(2), feed=feed)
        await wait_until(lambda: len(view.uploads) == 1)

        expected = await asyncio.to_thread(service.aggregate, "b", project.id)
        assert sorted(view.snapshot().keys()) == sorted(expected.keys())
        assert await view.refresh() is True
        assert sorted(view.snapshot().keys()) == sorted(expected.keys())
        await view.close()

    asyncio.run(scenario())


def test_reupload_after_folder_deletion_is_unread_again(store):
    from teamspace.notifications import NotificationService
    from teamspace.realtime.reconcile import LocalNotificationClient
    from tests.factories import at, make_project, record

    feed = ChangeFeed()
    service = NotificationService(feed=feed)
    project = make_project(feed=feed)

    async def scenario():
        view = LiveNotificationView("b", LocalNotificationClient(service), feed)
        await view.open(project.id)

        await asyncio.to_thread(record, project.id, "upload", "a", when=at(0), feed=feed)
        await wait_until(lambda: len(view.uploads) == 1)
        await asyncio.to_thread(record, project.id, "preview", "b", when=at(1), feed=feed)
        await wait_until(lambda: view.uploads == ())
        await asyncio.to_thread(record, project.id, "folder_deleted", "a", name=None, when=at(2), feed=feed)
        await asyncio.to_thread(record, project.id, "upload", "a", when=at(3), feed=feed)

        expected = await asyncio.to_thread(service.aggregate, "b", project.id)
        assert [(n.file_name, n.uploaded_at) for n in expected.uploads] == [("plan.pdf", at(3))]
        assert await view.refresh() is True
        assert sorted(view.snapshot().keys()) == sorted(expected.keys())
        await view.close()

    asyncio.run(scenario())


def test_global_view_covers_every_project(store):
    from teamspace.notifications import NotificationService
    from teamspace.realtime.reconcile import LocalNotificationClient
    from tests.factories import at, make_project, record

    feed = ChangeFeed()
    service = NotificationService(feed=feed)
    one = make_project(name="One", members=["a", "b"], feed=feed)
    two = make_project(name="Two", created_by="c", members=["b", "c"], feed=feed)

    async def scenario():
        view = LiveNotificationView("b", LocalNotificationClient(service), feed)
        await view.open()
        await asyncio.to_thread(record, one.id, "upload", "a", when=at(0), feed=feed)
        await asyncio.to_thread(record, two.id, "upload", "c", when=at(1), feed=feed)
        await wait_until(lambda: len(view.uploads) == 2)
        assert view.snapshot().project_names == {one.id: "One", two.id: "Two"}
        await view.close()

    asyncio.run(scenario())


class ScriptedChat:
    def __init__(self, messages=()):
        self.messages = list(messages)
        self.gate = None
        self.posted = []

    async def list_messages(self, project_id):
        return list(self.messages)

    async def post_message(self, project_id, username, message, client_key):
        self.posted.append(client_key)
        if self.gate is not None:
            await self.gate.wait()
        stored = ChatMessageOut(
            id=f"msg_{client_key}",
            project_id=project_id,
            username=username,
            message=message,
            created_at=_t(len(self.messages)),
            client_key=client_key,
        )
        self.messages.append(stored)
        return stored


def _message(id, username, text, minutes, client_key=None):
    return ChatMessageOut(
        id=id, project_id="p1", username=username, message=text, created_at=_t(minutes), client_key=client_key
    )


def test_placeholder_is_replaced_in_place():
    async def scenario():
        client = ScriptedChat([_message("msg_1", "b", "morning", 0)])
        view = LiveChatView("a", client, ChangeFeed())
        await view.open("p1")

        client.gate = asyncio.Event()
        sending = asyncio.create_task(view.send("hi all", client_key="k1"))
        await wait_until(lambda: client.posted)
        assert [(m.message, m.pending) for m in view.messages] == [("morning", False), ("hi all", True)]

        view.apply(ev("chat_messages", id="msg_2", project_id="p1", username="c",
                      message="hello", created_at=_t(1), client_key=None))
        client.gate.set()
        confirmed = await sending

        assert confirmed.id == "msg_k1"
        assert [m.key for m in view.messages] == ["msg_1", "msg_k1", "msg_2"]
        view.apply(ev("chat_messages", id="msg_k1", project_id="p1", username="a",
                      message="hi all", created_at=_t(1), client_key="k1"))
        assert len(view.messages) == 3
        await view.close()

    asyncio.run(scenario())


def test_echo_before_response_replaces_placeholder():
    async def scenario():
        client = ScriptedChat()
        view = LiveChatView("a", client, ChangeFeed())
        await view.open("p1")

        client.gate = asyncio.Event()
        sending = asyncio.create_task(view.send("ship it", client_key="k2"))
        await wait_until(lambda: client.posted)
        view.apply(ev("chat_messages", id="msg_k2", project_id="p1", username="a",
                      message="ship it", created_at=_t(0), client_key="k2"))
        assert [(m.id, m.pending) for m in view.messages] == [("msg_k2", False)]
        client.gate.set()
        await sending
        assert [m.id for m in view.messages] == ["msg_k2"]
        await view.close()

    asyncio.run(scenario())


def test_unconfirmed_placeholder_expires_on_refresh():
    async def scenario():
        client = ScriptedChat()
        patient = LiveChatView("a", client, ChangeFeed(), tolerance=60)
        hasty = LiveChatView("a", client, ChangeFeed(), tolerance=0.01)
        await patient.open("p1")
        await hasty.open("p1")

        client.gate = asyncio.Event()
        tasks = [
            asyncio.create_task(patient.send("one", client_key="k3")),
            asyncio.create_task(hasty.send("two", client_key="k4")),
        ]
        await wait_until(lambda: len(client.posted) == 2)
        await asyncio.sleep(0.05)
        await patient.refresh()
        await hasty.refresh()

        assert [m.client_key for m in patient.messages] == ["k3"]
        assert hasty.messages == ()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await patient.close()
        await hasty.close()

    asyncio.run(scenario())


def test_failed_send_removes_placeholder():
    class Failing(ScriptedChat):
        async def post_message(self, project_id, username, message, client_key):
            raise TransientStoreError("Chat unavailable")

    async def scenario():
        view = LiveChatView("a", Failing(), ChangeFeed())
        await view.open("p1")
        with pytest.raises(TransientStoreError):
            await view.send("lost")
        assert view.messages == ()
        await view.close()

    asyncio.run(scenario())


def test_chat_send_is_not_duplicated_by_its_echo(store):
    from teamspace.realtime.reconcile import LocalChatClient
    from tests.factories import make_project

    feed = ChangeFeed()
    project = make_project(feed=feed)

    async def scenario():
        client = LocalChatClient(feed=feed)
        view = LiveChatView("a", client, feed)
        await view.open(project.id)

        mine = await view.send("hello @b", client_key="tab-1")
        await client.post_message(project.id, "c", "welcome", "tab-9")
        await wait_until(lambda: len(view.messages) == 2)
        again = await view.send("hello @b", client_key="tab-1")

        assert again.id == mine.id
        assert [m.username for m in view.messages] == ["a", "c"]
        assert not any(m.pending for m in view.messages)
        assert await view.refresh() is True
        assert [m.id for m in view.messages][0] == mine.id
        assert len(view.messages) == 2
        await view.close()

    asyncio.run(scenario())
