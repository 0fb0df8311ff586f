"""Tests for authorization codes and PKCE."""

import threading

import pytest
from conftest import CHALLENGE, OTHER_VERIFIER, VERIFIER

from mcp_auth.codes import (
    AuthorizationCodeStore,
    compute_code_challenge,
    is_valid_code_challenge,
    is_valid_code_verifier,
    verify_code_challenge,
)
from mcp_auth.errors import InvalidGrant


class TestPKCE:
    """Tests for the S256 transform and parameter shapes."""

    def test_rfc7636_appendix_b(self):
        """The RFC 7636 example verifier maps to its published challenge."""
        assert (
            compute_code_challenge(VERIFIER)
            == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
        )

    def test_verify(self):
        assert verify_code_challenge(VERIFIER, CHALLENGE) is True
        assert verify_code_challenge(OTHER_VERIFIER, CHALLENGE) is False

    def test_verify_non_ascii_verifier(self):
        assert verify_code_challenge("é" * 43, CHALLENGE) is False

    @pytest.mark.parametrize(
        "verifier,valid",
        [
            (VERIFIER, True),
            ("a" * 43, True),
            ("a" * 128, True),
            ("a" * 42, False),
            ("a" * 129, False),
            ("a" * 42 + "~", True),
            ("a" * 42 + "+", False),
            ("", False),
            (None, False),
        ],
    )
    def test_verifier_shape(self, verifier, valid):
        assert is_valid_code_verifier(verifier) is valid

    @pytest.mark.parametrize(
        "challenge,valid",
        [
            (CHALLENGE, True),
            ("short", False),
            (CHALLENGE + "=", False),
            (None, False),
        ],
    )
    def test_challenge_shape(self, challenge, valid):
        assert is_valid_code_challenge(challenge) is valid


class TestIssue:
    """Tests for AuthorizationCodeStore.issue."""

    def test_issue_stores_unconsumed_code(self, clock):
        store = AuthorizationCodeStore(ttl=600, clock=clock)
        record = store.issue("c1", "https://app/cb", CHALLENGE, ["read"])

        assert record.code
        assert record.client_id == "c1"
        assert record.redirect_uri == "https://app/cb"
        assert record.code_challenge_method == "S256"
        assert record.scopes == frozenset({"read"})
        assert record.consumed is False
        assert record.expires_at == record.issued_at + 600
        assert len(store) == 1

    def test_codes_are_unique(self, clock):
        store = AuthorizationCodeStore(clock=clock)
        codes = {store.issue("c1", "https://app/cb", CHALLENGE, []).code for _ in range(100)}
        assert len(codes) == 100


class TestConsume:
    """Tests for AuthorizationCodeStore.consume."""

    def test_consume_success_marks_consumed(self, clock):
        store = AuthorizationCodeStore(clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, ["read"])

        record = store.consume(issued.code, VERIFIER)

        assert record.code == issued.code
        assert record.consumed is True

    def test_second_consume_fails(self, clock):
        store = AuthorizationCodeStore(clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])
        store.consume(issued.code, VERIFIER)

        with pytest.raises(InvalidGrant):
            store.consume(issued.code, VERIFIER)
        with pytest.raises(InvalidGrant):
            store.consume(issued.code, OTHER_VERIFIER)

    def test_unknown_code(self, clock):
        store = AuthorizationCodeStore(clock=clock)
        with pytest.raises(InvalidGrant):
            store.consume("nope", VERIFIER)

    def test_missing_code_or_verifier(self, clock):
        store = AuthorizationCodeStore(clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])
        with pytest.raises(InvalidGrant):
            store.consume(None, VERIFIER)
        with pytest.raises(InvalidGrant):
            store.consume(issued.code, None)

    def test_wrong_verifier_does_not_consume(self, clock):
        store = AuthorizationCodeStore(clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])

        with pytest.raises(InvalidGrant):
            store.consume(issued.code, OTHER_VERIFIER)

        assert store.consume(issued.code, VERIFIER).consumed is True

    def test_malformed_verifier_does_not_consume(self, clock):
        store = AuthorizationCodeStore(clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])

        with pytest.raises(InvalidGrant):
            store.consume(issued.code, "wrong-verifier")

        assert store.consume(issued.code, VERIFIER).consumed is True

    def test_failures_share_one_description(self, clock):
        """Unknown, consumed and PKCE failures must look identical."""
        store = AuthorizationCodeStore(clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])

        with pytest.raises(InvalidGrant) as wrong_verifier:
            store.consume(issued.code, OTHER_VERIFIER)
        store.consume(issued.code, VERIFIER)
        with pytest.raises(InvalidGrant) as replay:
            store.consume(issued.code, VERIFIER)
        with pytest.raises(InvalidGrant) as unknown:
            store.consume("nope", VERIFIER)

        descriptions = {
            e.value.to_dict()["error_description"]
            for e in (wrong_verifier, replay, unknown)
        }
        assert len(descriptions) == 1

    def test_expired_code(self, clock):
        store = AuthorizationCodeStore(ttl=600, clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])
        clock.advance(601)

        with pytest.raises(InvalidGrant):
            store.consume(issued.code, VERIFIER)
        # Lazily deleted
        assert len(store) == 0

    def test_code_valid_until_expiry(self, clock):
        store = AuthorizationCodeStore(ttl=600, clock=clock)
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])
        clock.advance(599)

        assert store.consume(issued.code, VERIFIER).consumed is True

    def test_concurrent_consume_single_winner(self):
        """Only one of many threads consuming the same code may succeed."""
        store = AuthorizationCodeStore()
        issued = store.issue("c1", "https://app/cb", CHALLENGE, [])
        barrier = threading.Barrier(50)
        results: list[bool] = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                store.consume(issued.code, VERIFIER)
                ok = True
            except InvalidGrant:
                ok = False
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=attempt) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 49


class TestPurge:
    """Tests for the expiry sweep."""

    def test_purge_removes_only_expired(self, clock):
        store = AuthorizationCodeStore(ttl=600, clock=clock)
        store.issue("c1", "https://app/cb", CHALLENGE, [])
        clock.advance(300)
        fresh = store.issue("c1", "https://app/cb", CHALLENGE, [])
        clock.advance(301)

        assert store.purge_expired() == 1
        assert len(store) == 1
        assert store.consume(fresh.code, VERIFIER)
