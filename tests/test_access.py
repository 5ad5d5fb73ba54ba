"""Unit tests for docvault.security.access — Permission hierarchy and AccessResolver."""

from datetime import datetime, timedelta, timezone

import pytest

from docvault.db.models import Document, SharedAccess
from docvault.db.session import session_scope
from docvault.engine.errors import ForbiddenError, ValidationFailureError
from docvault.security.access import (
    ALL_PERMISSIONS,
    NO_PERMISSIONS,
    AccessResolver,
    Permission,
    is_expired,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestPermission:
    def test_ordinals(self):
        assert Permission.VIEW.ordinal < Permission.DOWNLOAD.ordinal < Permission.EDIT.ordinal

    def test_implied(self):
        assert Permission.VIEW.implied() == {Permission.VIEW}
        assert Permission.DOWNLOAD.implied() == {Permission.VIEW, Permission.DOWNLOAD}
        assert Permission.EDIT.implied() == ALL_PERMISSIONS

    def test_parse(self):
        assert Permission.parse("download") is Permission.DOWNLOAD
        assert Permission.parse(Permission.EDIT) is Permission.EDIT

    def test_parse_unknown(self):
        with pytest.raises(ValidationFailureError, match="Unknown permission"):
            Permission.parse("ADMIN")


class TestIsExpired:
    def test_no_expiry(self):
        assert not is_expired(None, NOW)

    def test_boundary_is_still_valid(self):
        assert not is_expired(NOW, NOW)

    def test_past(self):
        assert is_expired(NOW - timedelta(seconds=1), NOW)

    def test_naive_treated_as_utc(self):
        assert is_expired(datetime(2026, 3, 1, 11, 59), NOW)


@pytest.fixture
def resolver():
    return AccessResolver()


@pytest.fixture
def doc_id(service, workspace):
    return service.upload(b"content", "doc.txt", "text/plain", workspace.id, 1).id


def grant(session_factory, doc_id, user_id, permission, expires_at=None):
    with session_scope(session_factory) as session:
        session.add(SharedAccess(
            document_id=doc_id,
            grantee_user_id=user_id,
            permission=permission,
            expires_at=expires_at,
            created_by=1,
        ))


class TestAccessResolver:
    """resolve / has / require against stored grants."""

    def test_owner_has_everything(self, resolver, session_factory, doc_id):
        with session_scope(session_factory) as session:
            doc = session.get(Document, doc_id)
            assert resolver.resolve(session, doc, 1) == ALL_PERMISSIONS

    def test_no_grant(self, resolver, session_factory, doc_id):
        with session_scope(session_factory) as session:
            doc = session.get(Document, doc_id)
            assert resolver.resolve(session, doc, 3) == NO_PERMISSIONS

    @pytest.mark.parametrize("granted,allowed,denied", [
        ("VIEW", {Permission.VIEW}, {Permission.DOWNLOAD, Permission.EDIT}),
        ("DOWNLOAD", {Permission.VIEW, Permission.DOWNLOAD}, {Permission.EDIT}),
        ("EDIT", set(ALL_PERMISSIONS), set()),
    ])
    def test_hierarchy(self, resolver, session_factory, doc_id, granted, allowed, denied):
        grant(session_factory, doc_id, 3, granted)
        with session_scope(session_factory) as session:
            doc = session.get(Document, doc_id)
            for p in allowed:
                assert resolver.has(session, doc, 3, p)
            for p in denied:
                assert not resolver.has(session, doc, 3, p)

    def test_expired_grant_ignored(self, resolver, session_factory, doc_id):
        grant(session_factory, doc_id, 3, "EDIT", expires_at=NOW)
        with session_scope(session_factory) as session:
            doc = session.get(Document, doc_id)
            assert resolver.resolve(session, doc, 3, now=NOW) == ALL_PERMISSIONS
            later = NOW + timedelta(seconds=1)
            assert resolver.resolve(session, doc, 3, now=later) == NO_PERMISSIONS

    def test_require_raises(self, resolver, session_factory, doc_id):
        grant(session_factory, doc_id, 3, "VIEW")
        with session_scope(session_factory) as session:
            doc = session.get(Document, doc_id)
            resolver.require(session, doc, 3, Permission.VIEW)
            with pytest.raises(ForbiddenError) as exc_info:
                resolver.require(session, doc, 3, Permission.DOWNLOAD)
        assert exc_info.value.required_permission == "DOWNLOAD"
        assert exc_info.value.document_id == doc_id

    def test_purge_expired(self, resolver, session_factory, doc_id):
        grant(session_factory, doc_id, 3, "VIEW", expires_at=NOW - timedelta(days=1))
        grant(session_factory, doc_id, 4, "VIEW", expires_at=NOW + timedelta(days=1))
        grant(session_factory, doc_id, 5, "VIEW")
        with session_scope(session_factory) as session:
            assert resolver.purge_expired(session, now=NOW) == 1
        with session_scope(session_factory) as session:
            remaining = sorted(g.grantee_user_id for g in session.query(SharedAccess))
        assert remaining == [4, 5]
