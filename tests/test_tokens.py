"""Token issuance and verification.

Covers the HS256 codec, session issuance and the difference between access
verification (signature and expiry only) and refresh verification (also bound
to the account's session slot).
"""

import base64
import json

import pytest

from novo.service.errors import (
    ExpiredTokenError,
    InvalidRefreshTokenError,
    InvalidSignatureError,
    NotFoundError,
    SessionRevokedError,
)
from novo.service.sessions import CredentialStore
from novo.service.tokens import (
    ACCESS,
    REFRESH,
    JWTCodec,
    SessionVerifier,
    TokenDecodeError,
    TokenExpired,
    TokenIssuer,
)
from novo.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def account(store):
    return store.create_account("ada@example.com", "Ada")


@pytest.fixture
def credentials(store):
    return CredentialStore(store)


@pytest.fixture
def issuer(settings, credentials, clock):
    return TokenIssuer(settings, credentials, clock=clock)


@pytest.fixture
def verifier(settings, credentials, clock):
    return SessionVerifier(settings, credentials, clock=clock)


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    new_payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{new_payload}.{sig}"


class TestJWTCodec:
    def test_round_trip_returns_claims(self, clock):
        codec = JWTCodec("k", issuer="novo", audience="clients", clock=clock)
        token = codec.encode(
            {"iss": "novo", "aud": "clients", "sub": "a1", "token_type": ACCESS, "exp": clock() + 60}
        )
        claims = codec.decode(token, token_type=ACCESS)
        assert claims["sub"] == "a1"

    def test_rejects_other_secret(self, clock):
        signer = JWTCodec("one", issuer="novo", audience="clients", clock=clock)
        checker = JWTCodec("two", issuer="novo", audience="clients", clock=clock)
        token = signer.encode(
            {"iss": "novo", "aud": "clients", "sub": "a1", "token_type": ACCESS, "exp": clock() + 60}
        )
        with pytest.raises(TokenDecodeError):
            checker.decode(token, token_type=ACCESS)

    def test_rejects_wrong_token_type(self, clock):
        codec = JWTCodec("k", issuer="novo", audience="clients", clock=clock)
        token = codec.encode(
            {"iss": "novo", "aud": "clients", "sub": "a1", "token_type": REFRESH, "exp": clock() + 60}
        )
        with pytest.raises(TokenDecodeError):
            codec.decode(token, token_type=ACCESS)

    def test_rejects_alg_none_header(self, clock):
        codec = JWTCodec("k", issuer="novo", audience="clients", clock=clock)
        token = codec.encode(
            {"iss": "novo", "aud": "clients", "sub": "a1", "token_type": ACCESS, "exp": clock() + 60}
        )
        _, payload, sig = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none"}').decode().rstrip("=")
        with pytest.raises(TokenDecodeError):
            codec.decode(f"{header}.{payload}.{sig}", token_type=ACCESS)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_rejects_malformed(self, clock, garbage):
        codec = JWTCodec("k", issuer="novo", audience="clients", clock=clock)
        with pytest.raises(TokenDecodeError):
            codec.decode(garbage, token_type=ACCESS)

    @pytest.mark.parametrize("signature", ["é", "abcé", "\udcff"])
    def test_rejects_non_ascii_signature(self, clock, signature):
        codec = JWTCodec("k", issuer="novo", audience="clients", clock=clock)
        token = codec.encode(
            {"iss": "novo", "aud": "clients", "sub": "a1", "token_type": ACCESS, "exp": clock() + 60}
        )
        header, payload, _ = token.split(".")
        with pytest.raises(TokenDecodeError):
            codec.decode(f"{header}.{payload}.{signature}", token_type=ACCESS)

    def test_expiry_honours_leeway(self, clock):
        codec = JWTCodec("k", issuer="novo", audience="clients", leeway_seconds=30, clock=clock)
        token = codec.encode(
            {"iss": "novo", "aud": "clients", "sub": "a1", "token_type": ACCESS, "exp": clock() + 10}
        )
        clock.advance(20)
        assert codec.decode(token, token_type=ACCESS)["sub"] == "a1"
        clock.advance(30)
        with pytest.raises(TokenExpired):
            codec.decode(token, token_type=ACCESS)


class TestIssueSession:
    def test_issue_session_records_only_hash(self, issuer, store, account):
        issued = issuer.issue_session(account.id)
        slot = store.get_session_slot(account.id)
        assert slot.is_active
        assert issued.refresh_token not in slot.session_hash
        assert len(slot.session_hash) == 64

    def test_issue_session_unknown_account(self, issuer):
        with pytest.raises(NotFoundError):
            issuer.issue_session("missing")

    def test_access_and_refresh_expiry(self, issuer, account, clock):
        issued = issuer.issue_session(account.id)
        assert issued.access_expires_at.timestamp() == pytest.approx(clock() + 60 * 60)
        assert issued.refresh_expires_at.timestamp() == pytest.approx(clock() + 7 * 24 * 3600)

    def test_access_token_is_not_a_refresh_token(self, issuer, verifier, account):
        issued = issuer.issue_session(account.id)
        with pytest.raises(InvalidRefreshTokenError):
            verifier.verify_refresh(issued.access_token)
        with pytest.raises(InvalidSignatureError):
            verifier.verify_access(issued.refresh_token)


class TestVerifyAccess:
    def test_valid_access_token(self, issuer, verifier, account):
        token, _ = issuer.issue_access(account.id)
        assert verifier.verify_access(token) == account.id

    def test_expired_access_token(self, issuer, verifier, account, clock):
        token, _ = issuer.issue_access(account.id)
        clock.advance(60 * 60 + 1)
        with pytest.raises(ExpiredTokenError):
            verifier.verify_access(token)

    def test_tampered_access_token(self, issuer, verifier, account):
        token, _ = issuer.issue_access(account.id)
        with pytest.raises(InvalidSignatureError):
            verifier.verify_access(_tamper_payload(token, sub="someone-else"))

    def test_access_survives_session_revocation(self, issuer, verifier, credentials, account):
        issued = issuer.issue_session(account.id)
        credentials.clear_session(account.id)
        assert verifier.verify_access(issued.access_token) == account.id


class TestVerifyRefresh:
    def test_valid_refresh_token(self, issuer, verifier, account):
        issued = issuer.issue_session(account.id)
        claims = verifier.verify_refresh(issued.refresh_token)
        assert claims.account_id == account.id
        assert claims.session_id

    def test_second_login_revokes_first_refresh(self, issuer, verifier, account):
        first = issuer.issue_session(account.id)
        second = issuer.issue_session(account.id)
        with pytest.raises(SessionRevokedError):
            verifier.verify_refresh(first.refresh_token)
        assert verifier.verify_refresh(second.refresh_token).account_id == account.id

    def test_cleared_slot_revokes_refresh(self, issuer, verifier, credentials, account):
        issued = issuer.issue_session(account.id)
        credentials.clear_session(account.id)
        with pytest.raises(SessionRevokedError):
            verifier.verify_refresh(issued.refresh_token)

    def test_expired_refresh_token(self, issuer, verifier, account, clock):
        issued = issuer.issue_session(account.id)
        clock.advance(7 * 24 * 3600 + 1)
        with pytest.raises(ExpiredTokenError):
            verifier.verify_refresh(issued.refresh_token)

    def test_tampered_refresh_token(self, issuer, verifier, account):
        issued = issuer.issue_session(account.id)
        with pytest.raises(InvalidRefreshTokenError):
            verifier.verify_refresh(_tamper_payload(issued.refresh_token, sid="forged"))
