"""
tests/test_reaction_service.py — Reaction Toggle Integration Tests
===================================================================
State machine, counter cache, uniqueness race handling, broadcast payloads
and reaction notifications.

Uses an in-memory SQLite database via the shared conftest fixtures.
"""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, delete, func, select, update
from sqlalchemy.orm import Session

from agora.database.engine import init_db
from agora.database.models import Comment, Notification, Post, Reaction, TargetKind
from agora.engine.targets import TargetRef
from agora.errors import ConflictError, NotFoundError, ValidationError
from agora.services import reaction_service
from agora.services.reaction_service import ToggleAction, reaction_summary, toggle_reaction
from conftest import Recorder, make_comment, make_post, make_user


@pytest.fixture
def engine(db_engine):
    """Re-use the shared conftest db_engine (SQLite, StaticPool)."""
    return db_engine


@pytest.fixture
def seeded(engine):
    alice = make_user(engine, "alice")
    bob = make_user(engine, "bob")
    post_id = make_post(engine, alice)
    return {"alice": alice, "bob": bob, "post": TargetRef(TargetKind.POST, post_id)}


def _post_count(engine, post_id: int) -> int:
    with Session(engine) as session:
        return session.get(Post, post_id).reactions_count


def _reaction_rows(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count(Reaction.id)))


class TestToggleStateMachine:
    def test_love_love_like_love_scenario(self, engine, seeded):
        """added 0→1, removed 1→0, added 0→1, changed stays 1."""
        bob, post = seeded["bob"], seeded["post"]

        r1 = toggle_reaction(engine, bob, post, "love")
        assert (r1.action, r1.reactions_count) == (ToggleAction.ADDED, 1)

        r2 = toggle_reaction(engine, bob, post, "love")
        assert (r2.action, r2.reactions_count) == (ToggleAction.REMOVED, 0)
        assert r2.reaction is None

        r3 = toggle_reaction(engine, bob, post, "like")
        assert (r3.action, r3.reactions_count) == (ToggleAction.ADDED, 1)

        r4 = toggle_reaction(engine, bob, post, "love")
        assert (r4.action, r4.reactions_count) == (ToggleAction.CHANGED, 1)
        assert r4.reaction.reaction_type == "love"

        assert _post_count(engine, post.id) == 1
        assert _reaction_rows(engine) == 1

    def test_same_type_twice_returns_to_baseline(self, engine, seeded):
        post = seeded["post"]
        toggle_reaction(engine, seeded["alice"], post, "like")
        baseline = _post_count(engine, post.id)

        toggle_reaction(engine, seeded["bob"], post, "dislike")
        toggle_reaction(engine, seeded["bob"], post, "dislike")
        assert _post_count(engine, post.id) == baseline

    def test_counter_tracks_distinct_users(self, engine, seeded):
        post = seeded["post"]
        carol = make_user(engine, "carol")
        toggle_reaction(engine, seeded["alice"], post, "like")
        toggle_reaction(engine, seeded["bob"], post, "love")
        result = toggle_reaction(engine, carol, post, "like")
        assert result.reactions_count == 3
        assert _reaction_rows(engine) == 3

    def test_comment_target(self, engine, seeded):
        cid = make_comment(engine, seeded["alice"], on="Post", on_id=seeded["post"].id)
        target = TargetRef(TargetKind.COMMENT, cid)
        result = toggle_reaction(engine, seeded["bob"], target, "like")
        assert result.reactions_count == 1
        assert result.post_id == seeded["post"].id
        with Session(engine) as session:
            assert session.get(Comment, cid).reactions_count == 1

    def test_as_dict_carries_own_reaction(self, engine, seeded):
        result = toggle_reaction(engine, seeded["bob"], seeded["post"], "love")
        assert result.as_dict() == {
            "action": "added",
            "reaction": "love",
            "reactions_count": 1,
            "target_type": "Post",
            "target_id": seeded["post"].id,
        }


class TestValidation:
    def test_unknown_reaction_type(self, engine, seeded):
        with pytest.raises(ValidationError, match="Unknown reaction type"):
            toggle_reaction(engine, seeded["bob"], seeded["post"], "wow")
        assert _reaction_rows(engine) == 0

    def test_missing_target(self, engine, seeded):
        with pytest.raises(NotFoundError):
            toggle_reaction(engine, seeded["bob"], TargetRef(TargetKind.POST, 999), "like")

    def test_missing_user(self, engine, seeded):
        with pytest.raises(NotFoundError):
            toggle_reaction(engine, 999, seeded["post"], "like")


class TestUniquenessRace:
    """A stale lookup makes the insert hit uq_reactions_user_target."""

    def test_lost_race_retries_against_fresh_state(self, engine, seeded):
        bob, post = seeded["bob"], seeded["post"]
        toggle_reaction(engine, bob, post, "love")

        real = reaction_service._find_existing
        calls = {"n": 0}

        def stale_once(session, user_id, target):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real(session, user_id, target)

        with patch.object(reaction_service, "_find_existing", side_effect=stale_once):
            result = toggle_reaction(engine, bob, post, "love")

        assert calls["n"] == 2
        assert result.action == ToggleAction.REMOVED
        assert _post_count(engine, post.id) == 0
        assert _reaction_rows(engine) == 0

    def test_second_conflict_raises(self, engine, seeded):
        bob, post = seeded["bob"], seeded["post"]
        toggle_reaction(engine, bob, post, "love")

        with patch.object(reaction_service, "_find_existing", return_value=None):
            with pytest.raises(ConflictError):
                toggle_reaction(engine, bob, post, "like")

        # Nothing from the failed attempts survived.
        assert _post_count(engine, post.id) == 1
        assert _reaction_rows(engine) == 1


class TestBroadcast:
    def test_post_reaction_payload_is_aggregate_only(self, engine, seeded, dispatcher):
        feed = Recorder()
        dispatcher.subscribe("posts", feed)
        toggle_reaction(engine, seeded["bob"], seeded["post"], "love", dispatcher=dispatcher)
        assert dispatcher.flush()

        assert feed.types() == ["reaction_changed"]
        assert feed.envelopes[0]["payload"] == {
            "target_type": "Post",
            "target_id": seeded["post"].id,
            "reactions_count": 1,
        }

    def test_comment_reaction_goes_to_thread(self, engine, seeded, dispatcher):
        pid = seeded["post"].id
        cid = make_comment(engine, seeded["alice"], on="Post", on_id=pid)
        thread, feed = Recorder(), Recorder()
        dispatcher.subscribe(f"comments:{pid}", thread)
        dispatcher.subscribe("posts", feed)

        toggle_reaction(
            engine, seeded["bob"], TargetRef(TargetKind.COMMENT, cid), "like",
            dispatcher=dispatcher,
        )
        assert dispatcher.flush()
        assert thread.types() == ["reaction_changed"]
        assert feed.envelopes == []

    def test_publish_failure_does_not_undo_toggle(self, engine, seeded, dispatcher):
        with patch.object(dispatcher, "publish", side_effect=RuntimeError("boom")):
            result = toggle_reaction(
                engine, seeded["bob"], seeded["post"], "like", dispatcher=dispatcher
            )
        assert result.action == ToggleAction.ADDED
        assert _post_count(engine, seeded["post"].id) == 1


class TestReactionNotifications:
    def _notifications(self, engine, user_id):
        with Session(engine) as session:
            return session.scalars(
                select(Notification).where(Notification.user_id == user_id)
            ).all()

    def test_added_reaction_notifies_owner(self, engine, seeded, dispatcher):
        inbox = Recorder()
        dispatcher.subscribe(f"notifications:{seeded['alice']}", inbox)
        toggle_reaction(engine, seeded["bob"], seeded["post"], "love", dispatcher=dispatcher)
        assert dispatcher.flush()

        rows = self._notifications(engine, seeded["alice"])
        assert [n.notification_type for n in rows] == ["reaction_on_post"]
        assert rows[0].actor_id == seeded["bob"]
        assert inbox.types() == ["new_notification"]

    def test_own_reaction_is_silent(self, engine, seeded):
        toggle_reaction(engine, seeded["alice"], seeded["post"], "love")
        assert self._notifications(engine, seeded["alice"]) == []

    def test_change_and_remove_do_not_notify(self, engine, seeded):
        bob, post = seeded["bob"], seeded["post"]
        toggle_reaction(engine, bob, post, "love")
        toggle_reaction(engine, bob, post, "like")
        toggle_reaction(engine, bob, post, "like")
        assert len(self._notifications(engine, seeded["alice"])) == 1


class TestReactionSummary:
    def test_counts_and_viewer_reaction(self, engine, seeded):
        post = seeded["post"]
        carol = make_user(engine, "carol")
        toggle_reaction(engine, seeded["alice"], post, "like")
        toggle_reaction(engine, seeded["bob"], post, "like")
        toggle_reaction(engine, carol, post, "love")

        summary = reaction_summary(engine, post, viewer_id=carol)
        assert summary["counts"] == {"like": 2, "love": 1, "dislike": 0}
        assert summary["reactions_count"] == 3
        assert summary["user_reaction"] == "love"

    def test_anonymous_viewer(self, engine, seeded):
        assert reaction_summary(engine, seeded["post"])["user_reaction"] is None


# ---------------------------------------------------------------------------
# Concurrent toggles by the same user (file-backed SQLite, real connections)
# ---------------------------------------------------------------------------
@pytest.fixture
def file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'reactions.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_seeded(file_engine):
    alice = make_user(file_engine, "alice")
    bob = make_user(file_engine, "bob")
    post_id = make_post(file_engine, alice)
    return {"alice": alice, "bob": bob, "post": TargetRef(TargetKind.POST, post_id)}


def _interfere_after_lookup(engine, interference):
    """Patch ``_find_existing`` so *interference* commits from another
    session right after the first lookup, before the toggle writes."""
    real = reaction_service._find_existing
    calls = {"n": 0}

    def lookup(session, user_id, target):
        found = real(session, user_id, target)
        calls["n"] += 1
        if calls["n"] == 1:
            with Session(engine) as other:
                interference(other, found)
                other.commit()
        return found

    return patch.object(reaction_service, "_find_existing", side_effect=lookup), calls


class TestConcurrentToggles:
    def test_row_removed_underneath_a_removal(self, file_engine, file_seeded):
        bob, post = file_seeded["bob"], file_seeded["post"]
        toggle_reaction(file_engine, bob, post, "like")

        def other_toggle_removes(other, found):
            other.execute(delete(Reaction).where(Reaction.id == found.id))
            other.execute(
                update(Post).where(Post.id == post.id)
                .values(reactions_count=Post.reactions_count - 1)
            )

        patcher, calls = _interfere_after_lookup(file_engine, other_toggle_removes)
        with patcher:
            result = toggle_reaction(file_engine, bob, post, "like")

        # Retried against fresh state: nothing there, so the like is added.
        assert calls["n"] == 2
        assert result.action == ToggleAction.ADDED
        assert _reaction_rows(file_engine) == 1
        assert _post_count(file_engine, post.id) == 1

    def test_row_removed_underneath_a_change(self, file_engine, file_seeded):
        bob, post = file_seeded["bob"], file_seeded["post"]
        toggle_reaction(file_engine, bob, post, "like")

        def other_toggle_removes(other, found):
            other.execute(delete(Reaction).where(Reaction.id == found.id))
            other.execute(
                update(Post).where(Post.id == post.id)
                .values(reactions_count=Post.reactions_count - 1)
            )

        patcher, _ = _interfere_after_lookup(file_engine, other_toggle_removes)
        with patcher:
            result = toggle_reaction(file_engine, bob, post, "love")

        assert result.action == ToggleAction.ADDED
        assert result.reaction.reaction_type == "love"
        assert _reaction_rows(file_engine) == 1
        assert _post_count(file_engine, post.id) == 1

    def test_many_threads_keep_counter_equal_to_rows(self, file_engine, file_seeded):
        bob, post = file_seeded["bob"], file_seeded["post"]
        conflicts = []
        errors = []

        def worker(types):
            for rtype in types:
                try:
                    toggle_reaction(file_engine, bob, post, rtype)
                except ConflictError as exc:
                    conflicts.append(exc)
                except Exception as exc:
                    errors.append(exc)

        threads = [
            threading.Thread(target=worker, args=(["like", "love"] * 5 if i % 2 else ["like"] * 10,))
            for i in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        rows = _reaction_rows(file_engine)
        assert rows <= 1
        assert _post_count(file_engine, post.id) == rows
