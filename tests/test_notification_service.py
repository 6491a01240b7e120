"""
tests/test_notification_service.py — Notification Lifecycle Tests
==================================================================
Creation, read transitions, serialisation of missing sources and actors,
and inbox paging.

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

import pytest
from sqlalchemy import delete
from sqlalchemy.orm import Session

from agora.constants import DELETED_USER_NAME, PREVIEW_LENGTH
from agora.database.models import Comment, Notification, Post, TargetKind, User
from agora.engine.targets import TargetRef
from agora.errors import NotFoundError, ValidationError
from agora.services import notification_service as ns
from conftest import Recorder, make_comment, make_post, make_user


@pytest.fixture
def engine(db_engine):
    return db_engine


@pytest.fixture
def world(engine):
    alice = make_user(engine, "alice")
    bob = make_user(engine, "bob")
    post_id = make_post(engine, alice, title="Alice's post")
    return {"alice": alice, "bob": bob, "post": TargetRef(TargetKind.POST, post_id)}


def _notify(engine, world, *, recipient=None, source=None, ntype="mention", dispatcher=None):
    return ns.create_notification(
        engine,
        recipient_id=recipient or world["alice"],
        actor_id=world["bob"],
        notification_type=ntype,
        source=source or world["post"],
        dispatcher=dispatcher,
    )


def _serialize(engine, notification_id: int) -> dict:
    with Session(engine) as session:
        return ns.serialize_notification(session, session.get(Notification, notification_id))


class TestCreate:
    def test_create_pushes_to_recipient_only(self, engine, world, dispatcher):
        alice_inbox, bob_inbox = Recorder(), Recorder()
        dispatcher.subscribe(f"notifications:{world['alice']}", alice_inbox)
        dispatcher.subscribe(f"notifications:{world['bob']}", bob_inbox)

        n = _notify(engine, world, dispatcher=dispatcher)
        assert dispatcher.flush()

        assert alice_inbox.types() == ["new_notification"]
        assert bob_inbox.envelopes == []
        payload = alice_inbox.envelopes[0]["payload"]
        assert payload["id"] == n.id
        assert payload["read"] is False
        assert payload["actor"] == {"id": world["bob"], "name": "Bob", "picture": None}
        assert payload["notifiable"] == {
            "type": "Post", "id": world["post"].id, "title": "Alice's post",
            "post_id": world["post"].id,
        }

    def test_unknown_type_rejected(self, engine, world):
        with pytest.raises(ValidationError):
            _notify(engine, world, ntype="poke")

    def test_source_must_be_a_target_ref(self, engine, world):
        with pytest.raises(ValidationError):
            _notify(engine, world, source=("Post", 1))

    def test_missing_recipient(self, engine, world):
        with pytest.raises(NotFoundError):
            _notify(engine, world, recipient=999)


class TestReadTransitions:
    def test_mark_read_is_idempotent(self, engine, world, dispatcher):
        inbox = Recorder()
        dispatcher.subscribe(f"notifications:{world['alice']}", inbox)
        n = _notify(engine, world)

        assert ns.mark_read(engine, world["alice"], n.id, dispatcher=dispatcher) is True
        assert ns.mark_read(engine, world["alice"], n.id, dispatcher=dispatcher) is False
        assert dispatcher.flush()

        assert inbox.types() == ["notification_read"]
        assert inbox.envelopes[0]["payload"] == {"notification_id": n.id}
        assert _serialize(engine, n.id)["read"] is True

    def test_mark_read_of_someone_elses_notification(self, engine, world):
        n = _notify(engine, world)
        with pytest.raises(NotFoundError):
            ns.mark_read(engine, world["bob"], n.id)

    def test_mark_read_missing(self, engine, world):
        with pytest.raises(NotFoundError):
            ns.mark_read(engine, world["alice"], 12345)

    def test_mark_all_read_emits_one_event(self, engine, world, dispatcher):
        inbox = Recorder()
        dispatcher.subscribe(f"notifications:{world['alice']}", inbox)
        for _ in range(3):
            _notify(engine, world, ntype="reaction_on_post")
        _notify(engine, world, recipient=world["bob"], ntype="reaction_on_post")

        assert ns.mark_all_read(engine, world["alice"], dispatcher=dispatcher) == 3
        assert ns.mark_all_read(engine, world["alice"], dispatcher=dispatcher) == 0
        assert dispatcher.flush()

        assert inbox.types() == ["all_notifications_read"]
        assert ns.unread_count(engine, world["alice"]) == 0
        assert ns.unread_count(engine, world["bob"]) == 1

    def test_mark_unread(self, engine, world):
        n = _notify(engine, world)
        ns.mark_read(engine, world["alice"], n.id)
        assert ns.mark_unread(engine, world["alice"], n.id) is True
        assert ns.mark_unread(engine, world["alice"], n.id) is False
        assert ns.unread_count(engine, world["alice"]) == 1


class TestSerialization:
    def test_deleted_comment_renders_null_source(self, engine, world):
        cid = make_comment(engine, world["bob"], on="Post", on_id=world["post"].id)
        n = _notify(engine, world, source=TargetRef(TargetKind.COMMENT, cid), ntype="comment_on_post")

        with Session(engine) as session:
            session.execute(delete(Comment).where(Comment.id == cid))
            session.commit()

        data = _serialize(engine, n.id)
        assert data["notifiable"] is None
        assert data["notification_type"] == "comment_on_post"

    def test_comment_with_deleted_post_renders_null_source(self, engine, world):
        cid = make_comment(engine, world["bob"], on="Post", on_id=world["post"].id)
        n = _notify(engine, world, source=TargetRef(TargetKind.COMMENT, cid), ntype="comment_on_post")
        with Session(engine) as session:
            session.execute(delete(Post).where(Post.id == world["post"].id))
            session.commit()
        assert _serialize(engine, n.id)["notifiable"] is None

    def test_comment_preview_is_truncated_in_payload_only(self, engine, world):
        text = "x" * 150
        cid = make_comment(engine, world["bob"], on="Post", on_id=world["post"].id, description=text)
        reply = make_comment(engine, world["bob"], on="Comment", on_id=cid, description="short")
        n = _notify(engine, world, source=TargetRef(TargetKind.COMMENT, cid), ntype="comment_on_post")
        r = _notify(engine, world, source=TargetRef(TargetKind.COMMENT, reply), ntype="reply_to_comment")

        data = _serialize(engine, n.id)["notifiable"]
        assert data["description"] == "x" * PREVIEW_LENGTH + "…"
        assert data["post_id"] == world["post"].id
        assert _serialize(engine, r.id)["notifiable"]["post_id"] == world["post"].id

        with Session(engine) as session:
            assert session.get(Comment, cid).description == text

    def test_deleted_actor_renders_placeholder(self, engine, world):
        n = _notify(engine, world)
        with Session(engine) as session:
            session.execute(delete(User).where(User.id == world["bob"]))
            session.commit()

        actor = _serialize(engine, n.id)["actor"]
        assert actor == {"id": None, "name": DELETED_USER_NAME, "picture": None}

    def test_unknown_stored_source_type(self, engine, world):
        n = _notify(engine, world)
        with Session(engine) as session:
            session.get(Notification, n.id).notifiable_type = "Reaction"
            session.commit()
        assert _serialize(engine, n.id)["notifiable"] is None


class TestListing:
    def test_newest_first_with_meta(self, engine, world):
        ids = [_notify(engine, world, ntype="reaction_on_post").id for _ in range(5)]
        page = ns.list_notifications(engine, world["alice"], page=1, per_page=2)

        assert [n["id"] for n in page["notifications"]] == [ids[4], ids[3]]
        assert page["unread_count"] == 5
        assert page["meta"] == {
            "current_page": 1, "per_page": 2, "total_count": 5, "total_pages": 3,
        }

        last = ns.list_notifications(engine, world["alice"], page=3, per_page=2)
        assert [n["id"] for n in last["notifications"]] == [ids[0]]

    def test_per_page_is_capped(self, engine, world):
        page = ns.list_notifications(engine, world["alice"], per_page=1000)
        assert page["meta"]["per_page"] == 100
        assert page["meta"]["total_pages"] == 0

    def test_unread_filter(self, engine, world):
        first = _notify(engine, world, ntype="reaction_on_post")
        _notify(engine, world, ntype="reaction_on_post")
        ns.mark_read(engine, world["alice"], first.id)

        unread = ns.list_notifications(engine, world["alice"], unread=True)
        read = ns.list_notifications(engine, world["alice"], unread=False)
        assert len(unread["notifications"]) == 1
        assert [n["id"] for n in read["notifications"]] == [first.id]


class TestCommentNotifications:
    def test_reply_notifies_parent_comment_owner(self, engine, world):
        carol = make_user(engine, "carol")
        parent = make_comment(engine, world["bob"], on="Post", on_id=world["post"].id)
        reply = make_comment(engine, carol, on="Comment", on_id=parent)

        with Session(engine) as session:
            n = ns.notify_for_comment(session, session.get(Comment, reply), carol)
            session.commit()
            assert n.user_id == world["bob"]
            assert n.notification_type == "reply_to_comment"

    def test_no_self_notification(self, engine, world):
        cid = make_comment(engine, world["alice"], on="Post", on_id=world["post"].id)
        with Session(engine) as session:
            assert ns.notify_for_comment(session, session.get(Comment, cid), world["alice"]) is None

    def test_delete_for_sources(self, engine, world):
        _notify(engine, world)
        _notify(engine, world, ntype="reaction_on_post")
        with Session(engine) as session:
            assert ns.delete_for_sources(session, [world["post"]]) == 2
            session.commit()
        assert ns.unread_count(engine, world["alice"]) == 0
