"""
Identity directory over the profiles table.

The engine only needs create/get/delete for the signup path and contact
details for billing and notifications.
"""
from dataclasses import dataclass
from typing import Optional, Protocol
from uuid import uuid4

from sqlalchemy import select, insert, delete
from sqlalchemy.exc import IntegrityError

from mcqprep.core.database import (
    get_db_session,
    profiles,
    user_subscriptions,
    reward_ledger,
)
from mcqprep.core.errors import ConflictError, ValidationError
from mcqprep.core.logging import log_event


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    has_active_subscription: bool = False
    stripe_customer_id: Optional[str] = None
    trial_taken: bool = False

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.email


class IdentityDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[UserProfile]: ...

    def create_user(self, email: str, first_name: Optional[str] = None, last_name: Optional[str] = None) -> UserProfile: ...

    def delete_user(self, user_id: str) -> None: ...


def _row_to_profile(row) -> UserProfile:
    return UserProfile(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        has_active_subscription=bool(row.has_active_subscription),
        stripe_customer_id=row.stripe_customer_id,
        trial_taken=bool(row.trial_taken),
    )


class LocalIdentityDirectory:
    """Default IdentityDirectory backed by the profiles table."""

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with get_db_session() as session:
            row = session.execute(select(profiles).where(profiles.c.id == user_id)).fetchone()
        return _row_to_profile(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        with get_db_session() as session:
            row = session.execute(
                select(profiles).where(profiles.c.email == email.strip().lower())
            ).fetchone()
        return _row_to_profile(row) if row else None

    def create_user(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> UserProfile:
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required")
        new_id = user_id or str(uuid4())
        try:
            with get_db_session() as session:
                session.execute(
                    insert(profiles).values(
                        id=new_id,
                        email=email,
                        first_name=first_name,
                        last_name=last_name,
                        has_active_subscription=False,
                        trial_taken=False,
                    )
                )
        except IntegrityError:
            raise ConflictError("A user with this email already exists")
        log_event("info", "identity.user.created", user_id=new_id)
        return UserProfile(id=new_id, email=email, first_name=first_name, last_name=last_name)

    def delete_user(self, user_id: str) -> None:
        """Compensating delete for a signup whose payment failed."""
        with get_db_session() as session:
            has_rows = session.execute(
                select(user_subscriptions.c.id).where(user_subscriptions.c.user_id == user_id).limit(1)
            ).fetchone()
            if has_rows:
                # Ledger rows are never deleted; keep the profile they reference
                log_event("warning", "identity.user.delete_skipped", user_id=user_id,
                          error_code="has_subscription_history")
                return
            session.execute(delete(reward_ledger).where(reward_ledger.c.user_id == user_id))
            session.execute(delete(profiles).where(profiles.c.id == user_id))
        log_event("info", "identity.user.deleted", user_id=user_id)


_directory: IdentityDirectory = LocalIdentityDirectory()


def get_identity_directory() -> IdentityDirectory:
    return _directory
