"""Tests for the in-memory refresh token registry."""

import threading

import pytest

from quillpress.service.errors import (
    BadSignature,
    InvalidRefreshToken,
    RefreshTokenExpired,
    WrongTokenKind,
)
from quillpress.service.refresh_registry import RefreshRegistry
from quillpress.service.tokens import Claims, TokenEngine
from quillpress.storage.models import User


@pytest.fixture
def engine(clock):
    return TokenEngine("registry-test-secret", clock=clock)


@pytest.fixture
def registry(engine):
    return RefreshRegistry(engine)


@pytest.fixture
def author():
    return User(id="author-1", email="author@example.com", role="collaborator")


class TestIssuePair:
    def test_issue_pair_records_refresh_token(self, registry, engine, author):
        pair = registry.issue_pair(author)
        claims = engine.verify_refresh(pair.refresh_token)
        record = registry.get(claims.token_id)
        assert record is not None
        assert record.owning_user_id == "author-1"
        assert record.expires_at_millis == claims.expires_at * 1000
        assert pair.access_ttl_seconds == 900

    def test_access_token_carries_subject_claims(self, registry, engine, author):
        pair = registry.issue_pair(author)
        claims = engine.verify_access(pair.access_token)
        assert (claims.subject_id, claims.email, claims.role) == (
            "author-1",
            "author@example.com",
            "collaborator",
        )

    def test_each_pair_gets_its_own_record(self, registry, author):
        registry.issue_pair(author)
        registry.issue_pair(author)
        assert len(registry) == 2
        assert len(registry.records_for_user("author-1")) == 2


class TestRefreshAccess:
    def test_refresh_mints_new_access_token(self, registry, engine, author, clock):
        pair = registry.issue_pair(author)
        clock.advance(120)
        grant = registry.refresh_access(pair.refresh_token)
        assert grant.claims.subject_id == "author-1"
        assert grant.claims.issued_at == int(clock.now())
        assert engine.verify_access(grant.access_token).role == "collaborator"

    def test_refresh_token_is_not_rotated(self, registry, author):
        pair = registry.issue_pair(author)
        registry.refresh_access(pair.refresh_token)
        registry.refresh_access(pair.refresh_token)
        assert len(registry) == 1

    def test_refresh_uses_current_subject_role(self, registry, author):
        pair = registry.issue_pair(author)
        promoted = User(id="author-1", email="author@example.com", role="admin")
        grant = registry.refresh_access(pair.refresh_token, subject=promoted)
        assert grant.claims.role == "admin"

    def test_refresh_rejects_mismatched_subject(self, registry, author):
        pair = registry.issue_pair(author)
        stranger = User(id="someone-else", email="x@example.com")
        with pytest.raises(InvalidRefreshToken):
            registry.refresh_access(pair.refresh_token, subject=stranger)

    def test_unknown_refresh_token(self, registry, engine, author):
        orphan = engine.sign_refresh(
            Claims(subject_id=author.id, email=author.email, role=author.role)
        )
        with pytest.raises(InvalidRefreshToken):
            registry.refresh_access(orphan)

    def test_access_token_is_not_a_refresh_token(self, registry, author):
        pair = registry.issue_pair(author)
        with pytest.raises(WrongTokenKind):
            registry.refresh_access(pair.access_token)

    def test_tampered_refresh_token(self, registry, author):
        pair = registry.issue_pair(author)
        with pytest.raises(BadSignature):
            registry.refresh_access(pair.refresh_token + "x")

    def test_expired_record_is_evicted(self, registry, engine, author, clock):
        pair = registry.issue_pair(author)
        token_id = engine.verify_refresh(pair.refresh_token).token_id
        clock.advance(604800 + 1)
        with pytest.raises(RefreshTokenExpired):
            registry.refresh_access(pair.refresh_token)
        assert registry.get(token_id) is None
        # Once evicted the token is simply unknown
        with pytest.raises(InvalidRefreshToken):
            registry.refresh_access(pair.refresh_token)


class TestRevoke:
    def test_revoke_removes_record(self, registry, author):
        pair = registry.issue_pair(author)
        registry.revoke(pair.refresh_token)
        assert len(registry) == 0
        with pytest.raises(InvalidRefreshToken):
            registry.refresh_access(pair.refresh_token)

    def test_revoke_is_idempotent(self, registry, author):
        pair = registry.issue_pair(author)
        registry.revoke(pair.refresh_token)
        registry.revoke(pair.refresh_token)
        assert len(registry) == 0

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b.c"])
    def test_revoke_ignores_invalid_tokens(self, registry, author, garbage):
        registry.issue_pair(author)
        registry.revoke(garbage)
        assert len(registry) == 1

    def test_revoke_accepts_expired_token(self, registry, author, clock):
        pair = registry.issue_pair(author)
        clock.advance(604800 + 10)
        registry.revoke(pair.refresh_token)
        assert len(registry) == 0

    def test_revoke_all_for_user(self, registry, author):
        other = User(id="reader-1", email="reader@example.com")
        first = registry.issue_pair(author)
        second = registry.issue_pair(author)
        kept = registry.issue_pair(other)
        assert registry.revoke_all_for_user("author-1") == 2
        assert registry.revoke_all_for_user("author-1") == 0
        for pair in (first, second):
            with pytest.raises(InvalidRefreshToken):
                registry.refresh_access(pair.refresh_token)
        assert registry.refresh_access(kept.refresh_token).claims.subject_id == "reader-1"


class TestSweep:
    def test_sweep_removes_only_expired(self, registry, engine, author, clock):
        registry.issue_pair(author)
        clock.advance(604800 - 100)
        fresh = registry.issue_pair(author)
        clock.advance(200)
        assert registry.sweep_expired() == 1
        assert len(registry) == 1
        assert registry.refresh_access(fresh.refresh_token).claims.subject_id == "author-1"

    def test_sweep_on_empty_registry(self, registry):
        assert registry.sweep_expired() == 0

    def test_close_sweeps(self, registry, author, clock):
        registry.issue_pair(author)
        clock.advance(604800 + 1)
        registry.close()
        assert len(registry) == 0


class TestConcurrency:
    def test_concurrent_issue_and_revoke(self, registry):
        """Parallel issue, refresh and revoke leave the map consistent."""
        users = [User(id=f"u{i}", email=f"u{i}@example.com") for i in range(8)]
        errors = []

        def worker(user):
            try:
                for _ in range(25):
                    pair = registry.issue_pair(user)
                    registry.refresh_access(pair.refresh_token, subject=user)
                    registry.revoke(pair.refresh_token)
                registry.issue_pair(user)
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(u,)) for u in users]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(registry) == len(users)
        for user in users:
            assert len(registry.records_for_user(user.id)) == 1

    def test_refresh_racing_revoke_has_one_outcome(self, registry, author):
        pair = registry.issue_pair(author)
        barrier = threading.Barrier(2)
        outcomes = []

        def refresher():
            barrier.wait()
            try:
                registry.refresh_access(pair.refresh_token)
                outcomes.append("refreshed")
            except InvalidRefreshToken:
                outcomes.append("rejected")

        def revoker():
            barrier.wait()
            registry.revoke(pair.refresh_token)

        threads = [threading.Thread(target=refresher), threading.Thread(target=revoker)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes in (["refreshed"], ["rejected"])
        assert len(registry) == 0

