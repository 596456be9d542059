from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from novo.config import Settings
from novo.logging import get_logger
from novo.service.errors import (
    AuthenticationError,
    ConflictError,
    FederatedAccountError,
    ForbiddenError,
    InvalidCredentialsError,
    NoRefreshTokenError,
    SessionRevokedError,
)
from novo.service.oauth import OAuthService
from novo.service.sessions import CredentialStore
from novo.service.tokens import IssuedSession, SessionVerifier, TokenIssuer
from novo.storage.errors import ConstraintViolation
from novo.storage.models import Account, SessionSlot

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid email or password"


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        provider: Optional[str] = None,
        provider_uid: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_provider(self, provider: str, provider_uid: str) -> Optional[Account]: ...

    def link_provider(
        self, account_id: str, provider: str, provider_uid: str
    ) -> Optional[Account]: ...

    def update_password(self, account_id: str, password_hash: str) -> Optional[Account]: ...

    def delete_account(self, account_id: str) -> bool: ...

    def get_session_slot(self, account_id: str) -> Optional[SessionSlot]: ...

    def write_session_hash(
        self, account_id: str, session_hash: Optional[str]
    ) -> Optional[SessionSlot]: ...


class AuthService:
    """Account and session lifecycle: register, login, refresh, logout, OAuth."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        oauth: Optional[OAuthService] = None,
        issuer: Optional[TokenIssuer] = None,
        verifier: Optional[SessionVerifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = CredentialStore(store)
        self.issuer = issuer or TokenIssuer(settings, self.credentials)
        self.verifier = verifier or SessionVerifier(settings, self.credentials)
        self.oauth = oauth or OAuthService(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            self.logger.warning("password_hash_unusable", account_id=account.id)
            return False

    def register(self, email: str, name: str, password: str) -> Account:
        """Create a password account. No credentials are issued."""
        try:
            account = self.store.create_account(
                email, name, password_hash=self._hash_password(password)
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail=exc.detail) from exc
        self.logger.info("account_registered", account_id=account.id)
        return account

    def login(self, email: str, password: str) -> tuple[Account, IssuedSession]:
        account = self.store.get_account_by_email(email)
        if not account:
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if account.is_federated_only:
            raise FederatedAccountError(
                f"please log in using your {account.provider} account",
                detail={"provider": account.provider},
            )
        if not self._verify_password(account, password):
            self.logger.info("login_rejected", account_id=account.id)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        issued = self.issuer.issue_session(account.id)
        return account, issued

    def refresh(self, refresh_token: Optional[str]) -> tuple[Account, str, datetime]:
        """Mint a new access credential from the refresh cookie.

        The refresh credential itself is not rotated.
        """
        if not refresh_token:
            raise NoRefreshTokenError("no refresh token provided")
        claims = self.verifier.verify_refresh(refresh_token)
        account = self.store.get_account(claims.account_id)
        if not account:
            raise SessionRevokedError("session has been revoked")
        access_token, expires_at = self.issuer.issue_access(account.id)
        self.logger.info("access_token_refreshed", account_id=account.id)
        return account, access_token, expires_at

    def logout(self, email: str, *, caller_account_id: Optional[str] = None) -> bool:
        """Clear the session slot for ``email``; unknown accounts are ignored."""
        account = self.store.get_account_by_email(email)
        if caller_account_id and (not account or account.id != caller_account_id):
            raise ForbiddenError("cannot log out another account")
        if not account:
            return False
        self.credentials.clear_session(account.id)
        self.logger.info("logout_completed", account_id=account.id)
        return True

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> Account:
        """Resolve a bearer header to an account; only signature and expiry are checked."""
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        account_id = self.verifier.verify_access(token)
        account = self.store.get_account(account_id)
        if not account:
            raise AuthenticationError("account not found")
        return account

    def change_password(
        self, account: Account, current_password: str, new_password: str
    ) -> Account:
        """Replace the password and revoke every outstanding refresh credential."""
        if account.is_federated_only:
            raise FederatedAccountError(
                f"account signs in with {account.provider}",
                detail={"provider": account.provider},
            )
        if not self._verify_password(account, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        updated = self.store.update_password(account.id, self._hash_password(new_password))
        if not updated:
            raise AuthenticationError("account not found")
        self.credentials.clear_session(account.id)
        self.logger.info("password_changed", account_id=account.id)
        return updated

    def delete_account(self, account_id: str) -> bool:
        deleted = self.store.delete_account(account_id)
        if deleted:
            self.logger.info("account_deleted", account_id=account_id)
        return deleted

    async def start_oauth(self, provider: str) -> str:
        return await self.oauth.authorization_url(provider)

    async def complete_oauth(
        self, provider: str, code: str, state: str
    ) -> tuple[Account, IssuedSession]:
        """Finish a provider login: burn state, exchange code, find-or-create, issue."""
        await self.oauth.consume_state(provider, state)
        identity = await self.oauth.exchange_code(provider, code)

        account = self.store.get_account_by_provider(provider, identity.provider_uid)
        if not account:
            existing = self.store.get_account_by_email(identity.email)
            if existing:
                account = self.store.link_provider(existing.id, provider, identity.provider_uid)
                self.logger.info("oauth_provider_linked", account_id=existing.id, provider=provider)
            else:
                try:
                    account = self.store.create_account(
                        identity.email,
                        identity.name,
                        provider=provider,
                        provider_uid=identity.provider_uid,
                    )
                except ConstraintViolation:
                    # Concurrent callback created the same email first
                    account = self.store.get_account_by_email(identity.email)
                    if account:
                        account = self.store.link_provider(
                            account.id, provider, identity.provider_uid
                        )
        if not account:
            raise AuthenticationError("account could not be resolved")

        issued = self.issuer.issue_session(account.id)
        self.logger.info("oauth_login_completed", account_id=account.id, provider=provider)
        return account, issued
