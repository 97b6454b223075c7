"""
Authentication Service.

Single orchestrator for the auth flows the roster client needs: sign-in,
sign-up, sign-out, password reset, re-authentication, profile and e-mail
changes, and account deletion.

All flows return typed ``AuthResult`` or ``ValidationResult`` models;
callers never inspect raw client exceptions.  Sign-out always ends with
the session lifecycle controller wiping per-account state.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from supabase import AuthSessionMissingError

from ondeck.database import DatabaseManager
from ondeck.errors import DataAccessError, is_connectivity_error
from ondeck.logger import StructuredLogger
from ondeck.models.auth_models import (
    SUPABASE_ERROR_MAP,
    AuthErrorCode,
    AuthResult,
    ValidationResult,
)
from ondeck.models.user import AppUser
from ondeck.repositories.user_repository import UserRepository
from ondeck.services.base_service import BaseService
from ondeck.services.identity import IdentityResolver
from ondeck.services.session_lifecycle import SessionLifecycleController


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_MIN_PASSWORD_LENGTH: int = 8

# C0 controls, DEL and C1 controls.
_CONTROL_CHAR_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f-\x9f]")

_NETWORK_MESSAGE: str = "Cannot reach the server. Check your internet connection."


class AuthService(BaseService):
    """Centralised authentication service.

    Parameters
    ----------
    db:
        Database manager providing the Supabase client.
    identity:
        Identity resolver; primed after sign-in.
    user_repo:
        Profile repository.
    session_controller:
        Wipes per-account state after sign-out.
    logger:
        A ``StructuredLogger`` instance.
    """

    def __init__(
        self,
        db: DatabaseManager,
        identity: IdentityResolver,
        user_repo: UserRepository,
        session_controller: SessionLifecycleController,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._db = db
        self._identity = identity
        self._user_repo = user_repo
        self._session_controller = session_controller

    # ==================================================================
    # Validation helpers
    # ==================================================================

    @staticmethod
    def validate_email(email: str) -> ValidationResult:
        """Validate an email address against a simplified RFC 5322 regex."""
        if not email or not email.strip():
            return ValidationResult(is_valid=False, error_message="Email address is required.")
        if not _EMAIL_RE.match(email.strip()):
            return ValidationResult(
                is_valid=False, error_message="Please enter a valid email address.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_password(password: str) -> ValidationResult:
        """Enforce the password policy: at least 8 characters, one letter, one digit."""
        if len(password) < _MIN_PASSWORD_LENGTH:
            return ValidationResult(
                is_valid=False,
                error_message=f"Password must be at least {_MIN_PASSWORD_LENGTH} characters.",
            )
        if not re.search(r"[A-Za-z]", password):
            return ValidationResult(
                is_valid=False, error_message="Password must contain at least one letter.",
            )
        if not re.search(r"\d", password):
            return ValidationResult(
                is_valid=False, error_message="Password must contain at least one digit.",
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def validate_name(name: str, field_label: str) -> ValidationResult:
        """Validate a first or last name.

        Rejects control characters (including newlines and tabs) to keep
        names printable on roster sheets.
        """
        stripped = name.strip()
        if not stripped:
            return ValidationResult(is_valid=False, error_message=f"{field_label} is required.")
        if _CONTROL_CHAR_RE.search(stripped):
            return ValidationResult(
                is_valid=False,
                error_message=(
                    f"{field_label} contains invalid characters. "
                    "Only printable characters are allowed."
                ),
            )
        return ValidationResult(is_valid=True)

    @staticmethod
    def normalize_email(email: str) -> str:
        """Strip whitespace and lowercase."""
        return email.strip().lower()

    # ==================================================================
    # Session
    # ==================================================================

    async def current_principal(self) -> Optional[str]:
        """Auth user id of the active session, or ``None``."""
        try:
            return await self._identity.current_principal()
        except DataAccessError as exc:
            self._logger.warning("Could not read the current session: %s", exc.message)
            return None

    async def sign_in(self, email: str, password: str) -> AuthResult:
        """Authenticate with email and password.

        Returns
        -------
        AuthResult
            ``success=True`` with ``principal`` on authentication, or a
            structured error.
        """
        email_check = self.validate_email(email)
        if not email_check.is_valid:
            return self._invalid(email_check)
        if not password:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message="Password is required.",
            )

        email = self.normalize_email(email)
        try:
            response = await self._db.supabase.auth.sign_in_with_password(
                {"email": email, "password": password},
            )
        except Exception as exc:
            return self._auth_failure(exc, "LOGIN_FAILED")

        principal = str(response.user.id) if response.user else None
        self._logger.info("User signed in: %s", email, extra={"event": "LOGIN"})
        return AuthResult(success=True, principal=principal, email=email)

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        organization: Optional[str] = None,
        athlete_id: Optional[str] = None,
    ) -> AuthResult:
        """Create an account.

        Profile fields travel as user metadata; a server trigger writes
        them to ``public.users``.  The profile row may therefore appear
        slightly after this call returns.
        """
        for check in (
            self.validate_email(email),
            self.validate_password(password),
            self.validate_name(first_name, "First name"),
            self.validate_name(last_name, "Last name"),
        ):
            if not check.is_valid:
                return self._invalid(check)

        email = self.normalize_email(email)
        metadata: dict[str, Any] = {
            "first_name": first_name.strip(),
            "last_name": last_name.strip(),
            # combined column kept for legacy readers
            "name": f"{first_name.strip()} {last_name.strip()}".strip(),
        }
        if organization and organization.strip():
            metadata["organization"] = organization.strip()
        if athlete_id and athlete_id.strip():
            metadata["athlete_id"] = athlete_id.strip()

        try:
            response = await self._db.supabase.auth.sign_up(
                {"email": email, "password": password, "options": {"data": metadata}},
            )
        except Exception as exc:
            return self._auth_failure(exc, "REGISTRATION_FAILED")

        principal = str(response.user.id) if response.user else None
        self._logger.info("Account created: %s", email, extra={"event": "REGISTRATION"})
        if response.session is None:
            return AuthResult(
                success=True,
                principal=principal,
                email=email,
                error_message="Check your email to confirm your account.",
            )
        return AuthResult(success=True, principal=principal, email=email)

    async def sign_out(self) -> None:
        """Sign out and wipe per-account local state.

        A missing session counts as already signed out.  Local state is
        cleared even when the server cannot be reached.
        """
        try:
            await self._db.supabase.auth.sign_out()
        except AuthSessionMissingError:
            self._logger.debug("sign_out: no active session.")
        except Exception as exc:
            self._logger.warning("Server-side sign_out failed: %s", exc)
        await self._session_controller.on_signed_out()
        self._logger.info("User signed out.", extra={"event": "LOGOUT"})

    # ==================================================================
    # Passwords
    # ==================================================================

    async def request_password_reset(self, email: str) -> AuthResult:
        """Send a password-reset email.

        Uses an anti-enumeration response: the same success message is
        shown whether or not the email is registered.
        """
        email_check = self.validate_email(email)
        if not email_check.is_valid:
            return self._invalid(email_check)

        email = self.normalize_email(email)
        try:
            await self._db.supabase.auth.reset_password_for_email(email)
            self._logger.info(
                "Password reset requested for %s.", email,
                extra={"event": "PASSWORD_RESET_REQUESTED"},
            )
        except Exception as exc:
            if is_connectivity_error(exc):
                return self._network_failure()
            self._logger.warning("Password reset error for %s: %s", email, exc)

        return AuthResult(
            success=True,
            error_message=(
                "If this email is registered, you will receive a password reset link."
            ),
        )

    async def update_password(self, new_password: str) -> AuthResult:
        """Set a new password for the signed-in (or recovering) user."""
        check = self.validate_password(new_password)
        if not check.is_valid:
            return self._invalid(check)
        try:
            await self._db.supabase.auth.update_user({"password": new_password})
        except Exception as exc:
            return self._auth_failure(exc, "PASSWORD_UPDATE_FAILED")
        return AuthResult(success=True)

    async def verify_current_password(self, password: str) -> bool:
        """Re-authenticate the signed-in user with *password*.

        Fails closed: any error, including a network error, is ``False``.
        """
        email = await self._current_email()
        if email is None or not password:
            return False
        try:
            await self._db.supabase.auth.sign_in_with_password(
                {"email": email, "password": password},
            )
        except Exception as exc:
            self._logger.info("Password re-verification failed: %s", exc)
            return False
        return True

    # ==================================================================
    # Profile
    # ==================================================================

    async def get_current_profile(self) -> Optional[AppUser]:
        """Profile of the signed-in user, or ``None``."""
        principal = await self.current_principal()
        if principal is None:
            return None
        try:
            return await self._user_repo.get_by_principal(principal)
        except DataAccessError as exc:
            self._logger.warning("Could not load the profile: %s", exc.message)
            return None

    async def update_profile(
        self,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        nickname: Optional[str] = None,
        clear_nickname: bool = False,
        organization: Optional[str] = None,
        athlete_id: Optional[str] = None,
    ) -> AuthResult:
        """Update only the supplied profile fields.

        ``clear_nickname=True`` writes ``NULL`` to the nickname; passing an
        empty *nickname* does the same.
        """
        principal = await self.current_principal()
        if principal is None:
            return self._not_signed_in()

        updates: dict[str, Any] = {}
        if first_name is not None:
            check = self.validate_name(first_name, "First name")
            if not check.is_valid:
                return self._invalid(check)
            updates["first_name"] = first_name.strip()
        if last_name is not None:
            check = self.validate_name(last_name, "Last name")
            if not check.is_valid:
                return self._invalid(check)
            updates["last_name"] = last_name.strip()
        if clear_nickname:
            updates["nickname"] = None
        elif nickname is not None:
            updates["nickname"] = nickname.strip() or None
        if organization is not None:
            updates["organization"] = organization.strip()
        if athlete_id is not None:
            updates["athlete_id"] = athlete_id.strip()

        try:
            await self._user_repo.update_profile(principal, updates)
        except DataAccessError as exc:
            return self._data_failure(exc)
        return AuthResult(success=True, principal=principal)

    async def change_email(self, current_password: str, new_email: str) -> AuthResult:
        """Move the account to *new_email*.

        1. Re-authenticate with *current_password*.
        2. Rewrite every stored copy of the old address (RPC).
        3. Change the login email (sends a confirmation mail).
        """
        old_email = await self._current_email()
        if old_email is None:
            return self._not_signed_in()

        check = self.validate_email(new_email)
        if not check.is_valid:
            return self._invalid(check)
        new_email = self.normalize_email(new_email)
        if new_email == old_email:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message="New email is the same as the current email.",
            )

        if not await self.verify_current_password(current_password):
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.INVALID_CREDENTIALS,
                error_message="Current password is incorrect. Please try again.",
            )

        try:
            await self._user_repo.change_email_records(old_email, new_email)
        except DataAccessError as exc:
            return self._data_failure(exc)

        try:
            await self._db.supabase.auth.update_user({"email": new_email})
        except Exception as exc:
            self._logger.error(
                "Profile email changed but auth email change failed: %s", exc,
                extra={"event": "EMAIL_CHANGE_PARTIAL"},
            )
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.UNKNOWN_ERROR,
                error_message=(
                    "Profile updated but the login email change failed. "
                    "Please contact support."
                ),
            )
        return AuthResult(success=True, email=new_email)

    async def delete_account(self) -> AuthResult:
        """Delete the account (``delete_account`` RPC) and sign out."""
        try:
            await self._db.supabase.rpc("delete_account").execute()
        except AuthSessionMissingError:
            pass
        except Exception as exc:
            return self._auth_failure(exc, "ACCOUNT_DELETE_FAILED")
        await self.sign_out()
        return AuthResult(success=True)

    # ==================================================================
    # Private helpers
    # ==================================================================

    async def _current_email(self) -> Optional[str]:
        try:
            session = await self._db.supabase.auth.get_session()
        except Exception as exc:
            self._logger.warning("Could not read the current session: %s", exc)
            return None
        if session is None or session.user is None or not session.user.email:
            return None
        return self.normalize_email(session.user.email)

    def _auth_failure(self, exc: Exception, event: str) -> AuthResult:
        """Map an auth client exception onto an ``AuthResult``."""
        if is_connectivity_error(exc):
            self._logger.warning("Network error during %s: %s", event, exc)
            return self._network_failure()

        error_str = f"{getattr(exc, 'code', '') or ''} {exc}".lower()
        for code_key, (error_code, human_message) in SUPABASE_ERROR_MAP.items():
            if code_key in error_str:
                self._logger.warning(
                    "Auth error (%s): %s", code_key, exc,
                    extra={"event": event, "error_code": code_key},
                )
                return AuthResult(
                    success=False, error_code=error_code, error_message=human_message,
                )

        self._logger.warning(
            "Unknown auth error: %s", exc,
            extra={"event": event, "error_code": "unknown"},
        )
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.UNKNOWN_ERROR,
            error_message="An unexpected error occurred. Please try again later.",
        )

    def _data_failure(self, exc: DataAccessError) -> AuthResult:
        if is_connectivity_error(exc):
            return self._network_failure()
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.VALIDATION_ERROR,
            error_message=exc.message,
        )

    @staticmethod
    def _invalid(check: ValidationResult) -> AuthResult:
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.VALIDATION_ERROR,
            error_message=check.error_message,
        )

    @staticmethod
    def _network_failure() -> AuthResult:
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.NETWORK_ERROR,
            error_message=_NETWORK_MESSAGE,
        )

    @staticmethod
    def _not_signed_in() -> AuthResult:
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.NOT_SIGNED_IN,
            error_message="You must be signed in to do that.",
        )
