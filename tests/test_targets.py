"""
tests/test_targets.py — TargetRef & Reply-Chain Resolution Tests
=================================================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import delete
from sqlalchemy.orm import Session

from agora.database.models import Comment, Post, TargetKind
from agora.engine.targets import (
    TargetRef,
    mentionable_text,
    require_target,
    resolve_target,
    root_post,
)
from agora.errors import NotFoundError, ValidationError
from conftest import make_comment, make_post, make_user


class TestTargetRefParse:
    def test_parse_is_case_insensitive(self):
        ref = TargetRef.parse("post", "7")
        assert ref == TargetRef(TargetKind.POST, 7)
        assert str(ref) == "Post:7"

    def test_parse_comment(self):
        assert TargetRef.parse("Comment", 3).kind == TargetKind.COMMENT

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError, match="Unknown target type"):
            TargetRef.parse("Reaction", 1)

    def test_non_integer_id_rejected(self):
        with pytest.raises(ValidationError, match="Invalid target id"):
            TargetRef.parse("Post", "abc")

    def test_as_dict(self):
        assert TargetRef(TargetKind.COMMENT, 4).as_dict() == {"type": "Comment", "id": 4}


class TestResolution:
    def test_resolve_and_require(self, db_engine):
        uid = make_user(db_engine, "alice")
        pid = make_post(db_engine, uid)
        with Session(db_engine) as session:
            assert isinstance(resolve_target(session, TargetRef(TargetKind.POST, pid)), Post)
            assert resolve_target(session, TargetRef(TargetKind.POST, 999)) is None
            with pytest.raises(NotFoundError):
                require_target(session, TargetRef(TargetKind.COMMENT, 999))

    def test_root_post_walks_reply_chain(self, db_engine):
        uid = make_user(db_engine, "alice")
        pid = make_post(db_engine, uid)
        c1 = make_comment(db_engine, uid, on="Post", on_id=pid)
        c2 = make_comment(db_engine, uid, on="Comment", on_id=c1)
        c3 = make_comment(db_engine, uid, on="Comment", on_id=c2)
        with Session(db_engine) as session:
            reply = session.get(Comment, c3)
            assert root_post(session, reply).id == pid

    def test_root_post_none_when_chain_broken(self, db_engine):
        uid = make_user(db_engine, "alice")
        pid = make_post(db_engine, uid)
        c1 = make_comment(db_engine, uid, on="Post", on_id=pid)
        c2 = make_comment(db_engine, uid, on="Comment", on_id=c1)
        with Session(db_engine) as session:
            session.execute(delete(Comment).where(Comment.id == c1))
            session.commit()
            assert root_post(session, session.get(Comment, c2)) is None

    def test_mentionable_text(self, db_engine):
        uid = make_user(db_engine, "alice")
        pid = make_post(db_engine, uid, title="Title @bob", description="Body mentions @carol")
        cid = make_comment(db_engine, uid, on="Post", on_id=pid, description="@dave")
        with Session(db_engine) as session:
            assert mentionable_text(session.get(Post, pid)) == "Title @bob Body mentions @carol"
            assert mentionable_text(session.get(Comment, cid)) == "@dave"
