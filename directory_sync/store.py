"""
SQLAlchemy-backed local user store.

Every write commits on its own so a failure affects only the account being
written; the failed transaction is rolled back and reported as UserStoreError.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from directory_sync.models import GroupMapping, LocalUser, Role, UserRole

logger = logging.getLogger(__name__)


class UserStoreError(Exception):
    """Raised when a user store read or write fails."""
    pass


class UserStore:
    """User store and group mapping accessor over one database session."""

    def __init__(self, session: Session):
        self.session = session

    @classmethod
    def factory(cls, session_factory: Callable[[], Session]) -> Callable[[], "UserStore"]:
        """Return a callable producing a store with a fresh session."""
        def create_store() -> "UserStore":
            return cls(session_factory())
        return create_store

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.session.close()

    def _commit(self, action: str):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise UserStoreError(f"{action}: {e.__class__.__name__}: {e}") from e

    # Group mappings

    def list_active_group_mappings(self) -> List[GroupMapping]:
        """Active mappings in a fixed order."""
        stmt = select(GroupMapping).where(GroupMapping.is_active.is_(True)).order_by(GroupMapping.id)
        return list(self.session.scalars(stmt))

    def list_group_mappings(self) -> List[GroupMapping]:
        stmt = select(GroupMapping).order_by(GroupMapping.group_name)
        return list(self.session.scalars(stmt))

    def find_group_mapping(self, group_name: str) -> Optional[GroupMapping]:
        stmt = select(GroupMapping).where(func.lower(GroupMapping.group_name) == group_name.strip().lower())
        return self.session.scalars(stmt).first()

    def add_group_mapping(self, group_name: str, role: Role = Role.USER, is_active: bool = True) -> GroupMapping:
        """
        Add a group mapping.

        Raises:
            UserStoreError: If the name is empty or already mapped
        """
        trimmed = (group_name or '').strip()
        if not trimmed:
            raise UserStoreError("Group name cannot be empty.")
        if self.find_group_mapping(trimmed):
            raise UserStoreError(f"AD group '{trimmed}' is already configured.")

        mapping = GroupMapping(group_name=trimmed, mapped_role=Role(role), is_active=is_active)
        self.session.add(mapping)
        self._commit(f"Failed to add AD group '{trimmed}'")
        logger.info(f"Added AD group mapping '{trimmed}' -> {mapping.mapped_role.value}")
        return mapping

    def remove_group_mapping(self, group_name: str) -> bool:
        mapping = self.find_group_mapping(group_name)
        if not mapping:
            return False
        self.session.delete(mapping)
        self._commit(f"Failed to remove AD group '{group_name}'")
        logger.info(f"Removed AD group mapping '{mapping.group_name}'")
        return True

    def seed_group_mappings(self, mappings: Iterable[Dict[str, Any]]) -> int:
        """Insert configured mappings that are not in the database yet."""
        added = 0
        for entry in mappings:
            if self.find_group_mapping(entry['group']):
                continue
            self.add_group_mapping(entry['group'], Role(entry.get('role', 'User')), entry.get('active', True))
            added += 1
        return added

    # Users

    def find_user_by_identity(self, identity_key: str) -> Optional[LocalUser]:
        stmt = select(LocalUser).where(func.lower(LocalUser.identity_key) == identity_key.lower())
        try:
            return self.session.scalars(stmt).first()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise UserStoreError(f"Failed to look up user '{identity_key}': {e}") from e

    def find_user_by_name(self, user_name: str) -> Optional[LocalUser]:
        stmt = select(LocalUser).where(func.lower(LocalUser.user_name) == user_name.lower())
        return self.session.scalars(stmt).first()

    def list_active_external_users(self) -> List[LocalUser]:
        stmt = select(LocalUser).where(LocalUser.is_external.is_(True), LocalUser.is_active.is_(True))
        return list(self.session.scalars(stmt))

    def create_user(self, identity_key: str, display_name: str, email: str, role: Role) -> LocalUser:
        """
        Create an active, externally sourced account without a local password.

        Raises:
            UserStoreError: If the account cannot be written
        """
        user = LocalUser(
            user_name=identity_key,
            identity_key=identity_key,
            display_name=display_name,
            email=email,
            password_hash=None,
            is_external=True,
            is_active=True,
            must_change_password=False,
        )
        user.roles.append(UserRole(role=Role(role)))
        self.session.add(user)
        self._commit(f"Failed to create user '{identity_key}'")
        return user

    def update_user(self, user: LocalUser, role: Optional[Role] = None) -> None:
        """Commit pending attribute changes, replacing the role as well when one is given.

        Both land in one transaction; on failure neither is kept.
        """
        if role is not None:
            user.roles.clear()
            # Flush the removals first so the unique (user, role) constraint holds
            try:
                self.session.flush()
            except SQLAlchemyError as e:
                self.session.rollback()
                raise UserStoreError(f"Failed to update user '{user.user_name}': {e}") from e
            user.roles.append(UserRole(role=Role(role)))
        self._commit(f"Failed to update user '{user.user_name}'")

    def get_role(self, user: LocalUser) -> Optional[Role]:
        return user.role

    def set_role(self, user: LocalUser, role: Role) -> None:
        """Replace all current role assignments with a single role."""
        self.update_user(user, role)

    def deactivate_user(self, user: LocalUser) -> None:
        user.is_active = False
        self._commit(f"Failed to deactivate user '{user.user_name}'")
