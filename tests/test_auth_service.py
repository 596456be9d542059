"""AuthService flows against the in-memory store."""

import pytest

from novo.service.auth import AuthService
from novo.service.errors import (
    AuthenticationError,
    ConflictError,
    FederatedAccountError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidSignatureError,
    NoRefreshTokenError,
    OAuthError,
    SessionRevokedError,
)
from novo.service.oauth import OAuthService
from novo.storage.memory import MemoryStore

PASSWORD = "correct-horse"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def oauth(settings):
    return OAuthService(settings)


@pytest.fixture
def auth(store, settings, oauth):
    return AuthService(store, settings, oauth=oauth)


@pytest.fixture
def account(auth):
    return auth.register("ada@example.com", "Ada", PASSWORD)


class TestRegisterAndLogin:
    def test_register_hashes_password(self, account):
        assert account.password_hash.startswith("$argon2id$")
        assert PASSWORD not in account.password_hash

    def test_register_duplicate_email(self, auth, account):
        with pytest.raises(ConflictError) as excinfo:
            auth.register("ADA@example.com", "Ada Again", PASSWORD)
        assert excinfo.value.error_code == "CONFLICT"

    def test_register_does_not_start_session(self, auth, store, account):
        assert not store.get_session_slot(account.id).is_active

    def test_login_returns_credentials(self, auth, account):
        logged_in, issued = auth.login("ada@example.com", PASSWORD)
        assert logged_in.id == account.id
        assert auth.verifier.verify_access(issued.access_token) == account.id
        assert auth.verifier.verify_refresh(issued.refresh_token).account_id == account.id

    def test_unknown_email_and_wrong_password_look_the_same(self, auth, account):
        with pytest.raises(InvalidCredentialsError) as unknown:
            auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            auth.login("ada@example.com", "not-the-password")
        assert unknown.value.message == wrong.value.message

    def test_federated_only_account_cannot_use_password(self, auth, store):
        store.create_account("gh@example.com", "GH", provider="github", provider_uid="7")
        with pytest.raises(FederatedAccountError) as excinfo:
            auth.login("gh@example.com", PASSWORD)
        assert excinfo.value.detail == {"provider": "github"}
        assert excinfo.value.status_code == 400


class TestRefresh:
    def test_refresh_mints_new_access_token(self, auth, account):
        _, issued = auth.login("ada@example.com", PASSWORD)
        refreshed_account, access_token, _ = auth.refresh(issued.refresh_token)
        assert refreshed_account.id == account.id
        assert auth.verifier.verify_access(access_token) == account.id

    def test_refresh_does_not_rotate_session(self, auth, account):
        _, issued = auth.login("ada@example.com", PASSWORD)
        auth.refresh(issued.refresh_token)
        auth.refresh(issued.refresh_token)

    def test_refresh_without_cookie(self, auth):
        with pytest.raises(NoRefreshTokenError):
            auth.refresh(None)

    def test_refresh_after_second_login_is_revoked(self, auth, account):
        _, first = auth.login("ada@example.com", PASSWORD)
        auth.login("ada@example.com", PASSWORD)
        with pytest.raises(SessionRevokedError):
            auth.refresh(first.refresh_token)

    def test_refresh_after_account_deleted(self, auth, account):
        _, issued = auth.login("ada@example.com", PASSWORD)
        auth.delete_account(account.id)
        with pytest.raises(SessionRevokedError):
            auth.refresh(issued.refresh_token)


class TestLogout:
    def test_logout_revokes_refresh(self, auth, account):
        _, issued = auth.login("ada@example.com", PASSWORD)
        assert auth.logout("ada@example.com") is True
        with pytest.raises(SessionRevokedError):
            auth.refresh(issued.refresh_token)

    def test_logout_is_idempotent(self, auth, account):
        auth.logout("ada@example.com")
        auth.logout("ada@example.com")
        assert auth.logout("nobody@example.com") is False

    def test_logout_other_account_with_bearer(self, auth, account):
        other = auth.register("bob@example.com", "Bob", PASSWORD)
        with pytest.raises(ForbiddenError):
            auth.logout("ada@example.com", caller_account_id=other.id)

    def test_access_token_still_valid_after_logout(self, auth, account):
        _, issued = auth.login("ada@example.com", PASSWORD)
        auth.logout("ada@example.com")
        assert auth.authenticate(f"Bearer {issued.access_token}").id == account.id


class TestAuthenticate:
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "token"])
    def test_missing_bearer(self, auth, header):
        with pytest.raises(AuthenticationError):
            auth.authenticate(header)

    def test_garbage_bearer(self, auth):
        with pytest.raises(InvalidSignatureError):
            auth.authenticate("Bearer not.a.jwt")


class TestChangePassword:
    def test_change_password_revokes_sessions(self, auth, account):
        _, issued = auth.login("ada@example.com", PASSWORD)
        auth.change_password(account, PASSWORD, "new-password")
        with pytest.raises(SessionRevokedError):
            auth.refresh(issued.refresh_token)
        auth.login("ada@example.com", "new-password")

    def test_change_password_wrong_current(self, auth, account):
        with pytest.raises(InvalidCredentialsError):
            auth.change_password(account, "nope-nope", "new-password")

    def test_change_password_federated(self, auth, store):
        federated = store.create_account("gh@example.com", "GH", provider="github", provider_uid="7")
        with pytest.raises(FederatedAccountError):
            auth.change_password(federated, "", "new-password")


class TestCompleteOAuth:
    async def test_creates_federated_account(self, auth, oauth):
        url = await auth.start_oauth("github")
        state = url.split("state=")[1].split("&")[0]
        oauth.register_oauth_code(
            "github", "code-1", {"provider_uid": "99", "email": "New@Example.com", "name": "Newbie"}
        )
        account, issued = await auth.complete_oauth("github", "code-1", state)
        assert account.email == "new@example.com"
        assert account.provider == "github"
        assert account.is_federated_only
        assert auth.verifier.verify_refresh(issued.refresh_token).account_id == account.id

    async def test_links_existing_email(self, auth, oauth, account):
        url = await auth.start_oauth("google")
        state = url.split("state=")[1].split("&")[0]
        oauth.register_oauth_code(
            "google", "code-2", {"provider_uid": "g-1", "email": "ada@example.com", "name": "Ada"}
        )
        linked, _ = await auth.complete_oauth("google", "code-2", state)
        assert linked.id == account.id
        assert linked.provider == "google"
        # Password login keeps working on a linked account
        auth.login("ada@example.com", PASSWORD)

    async def test_state_cannot_be_replayed(self, auth, oauth):
        url = await auth.start_oauth("github")
        state = url.split("state=")[1].split("&")[0]
        oauth.register_oauth_code("github", "c1", {"provider_uid": "1", "email": "a@example.com"})
        oauth.register_oauth_code("github", "c2", {"provider_uid": "1", "email": "a@example.com"})
        await auth.complete_oauth("github", "c1", state)
        with pytest.raises(OAuthError):
            await auth.complete_oauth("github", "c2", state)

    async def test_state_bound_to_provider(self, auth, oauth):
        url = await auth.start_oauth("github")
        state = url.split("state=")[1].split("&")[0]
        oauth.register_oauth_code("google", "c1", {"provider_uid": "1", "email": "a@example.com"})
        with pytest.raises(OAuthError):
            await auth.complete_oauth("google", "c1", state)
