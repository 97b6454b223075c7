"""
User Repository.

Data access for ``public.users``, the application profile linked to an
auth principal through ``user_id``.
"""

from __future__ import annotations

from typing import Any, Optional

from ondeck.errors import DataValidationError, classify_error
from ondeck.models.user import USER_COLUMNS, AppUser
from ondeck.repositories.base_repository import BaseRepository


class UserRepository(BaseRepository):
    """Profile reads and writes."""

    TABLE = "users"

    async def get_by_principal(self, principal: str) -> Optional[AppUser]:
        """Profile of the auth user *principal*, or ``None`` when missing.

        A found profile also primes the identity memo, saving the separate
        id lookup on the next scoped query.
        """
        row = await self._select_one(
            lambda: (
                self.supabase.table(self.TABLE)
                .select(USER_COLUMNS)
                .eq("user_id", principal)
                .limit(1)
                .execute()
            ),
            operation_name="get_by_principal (users)",
        )
        if row is None:
            return None
        user = AppUser.model_validate(row)
        if user.id:
            self._identity.prime(principal, user.id)
        return user

    async def update_profile(self, principal: str, updates: dict[str, Any]) -> None:
        """Apply a partial update to the profile of *principal*.

        An empty *updates* mapping is a no-op.
        """
        if not updates:
            return
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.TABLE)
                .update(updates)
                .eq("user_id", principal)
                .execute()
            ),
            operation_name="update_profile (users)",
        )

    async def change_email_records(self, old_email: str, new_email: str) -> None:
        """Move every stored copy of *old_email* to *new_email*.

        Runs the ``change_user_email`` RPC, which rewrites the profile and
        any athlete / guardian e-mails on player rows in one transaction.
        """
        try:
            await self.supabase.rpc(
                "change_user_email",
                {"p_old_email": old_email, "p_new_email": new_email},
            ).execute()
        except Exception as exc:
            text = str(exc)
            if "already in use" in text or "already registered" in text:
                raise DataValidationError(
                    "That email address is already in use by another account.", exc,
                ) from exc
            raise classify_error(exc, "change_email_records (users)") from exc
