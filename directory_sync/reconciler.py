"""
Directory group reconciliation.

A sync run brings local accounts and roles into agreement with the membership
of the configured directory groups. It runs in two phases: the desired state
is read from the directory into a map keyed by identity, then applied to the
user store. Accounts that vanished from every group are deactivated only when
every group was resolved, so that an unreachable group never causes accounts
to be switched off.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from directory_sync.ldap_client import DirectoryProvider, GroupNotFoundError, LDAPConnectionError
from directory_sync.logging_setup import security_logger
from directory_sync.models import GroupMapping, LocalUser, Role, higher_priority_role, utcnow
from directory_sync.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call
from directory_sync.store import UserStore

logger = logging.getLogger(__name__)

ERROR_DISABLED = "Active Directory integration is disabled."
ERROR_NOT_CONFIGURED = "Active Directory domain is not configured."
ERROR_NO_MAPPINGS = "No active AD group mappings configured for synchronization."
ERROR_IN_PROGRESS = "A directory sync is already in progress."

CONFIGURATION_ERRORS = (ERROR_DISABLED, ERROR_NOT_CONFIGURED, ERROR_NO_MAPPINGS)


@dataclass
class SyncRunResult:
    """Outcome of one reconciliation pass."""
    success: bool = False
    users_created: int = 0
    users_updated: int = 0
    users_deactivated: int = 0
    roles_changed: int = 0
    errors: List[str] = field(default_factory=list)
    connection_failed: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def summary(self) -> str:
        text = (f"Sync {'completed' if self.success else 'failed'}. "
                f"Created: {self.users_created}, Updated: {self.users_updated}, "
                f"Deactivated: {self.users_deactivated}, Roles changed: {self.roles_changed}.")
        if self.errors:
            text += f" Errors: {'; '.join(self.errors)}"
        return text

    @property
    def runtime_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'users_created': self.users_created,
            'users_updated': self.users_updated,
            'users_deactivated': self.users_deactivated,
            'roles_changed': self.roles_changed,
            'errors': list(self.errors),
            'connection_failed': self.connection_failed,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'runtime_seconds': self.runtime_seconds,
            'summary': self.summary,
        }


@dataclass
class DesiredUser:
    """Directory state for one identity after all groups were read."""
    identity: str
    role: Role
    display_name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class DesiredState:
    users: Dict[str, DesiredUser] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    group_failed: bool = False


def build_desired_state(
    mappings: List[GroupMapping],
    resolve_members: Callable[[str], list]
) -> DesiredState:
    """
    Read every mapped group and merge members into one map keyed by identity.

    An identity found in several groups keeps the highest-priority role. A group
    that cannot be resolved is recorded as an error and flags the state as
    incomplete; the remaining groups are still read.
    """
    state = DesiredState()

    for mapping in mappings:
        role = Role(mapping.mapped_role)
        try:
            members = resolve_members(mapping.group_name)
        except GroupNotFoundError as e:
            state.errors.append(str(e))
            state.group_failed = True
            logger.error(f"AD group '{mapping.group_name}' not found in directory")
            continue
        except Exception as e:
            cause = e.last_exception if isinstance(e, MaxRetriesExceeded) else e
            state.errors.append(f"Error processing AD group '{mapping.group_name}': {cause}")
            state.group_failed = True
            logger.error(f"Error processing AD group '{mapping.group_name}': {cause}")
            continue

        for member in members:
            identity = (member.identity or '').strip()
            if not identity:
                continue

            key = identity.lower()
            existing = state.users.get(key)
            if existing is None:
                state.users[key] = DesiredUser(identity, role, member.display_name, member.email)
            elif higher_priority_role(existing.role, role) != existing.role:
                state.users[key] = DesiredUser(
                    existing.identity, role,
                    member.display_name or existing.display_name,
                    member.email or existing.email
                )

        logger.info(f"AD group '{mapping.group_name}' ({role.value}): {len(members)} members")

    return state


class DirectorySyncReconciler:
    """
    Runs reconciliation passes against a directory provider and the user store.

    Only one pass runs at a time; a trigger that arrives while a pass is in
    progress is rejected.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store_factory: Callable[[], UserStore],
        provider_factory: Optional[Callable[[], DirectoryProvider]] = None
    ):
        """
        Args:
            config: Full application configuration
            store_factory: Callable returning a UserStore context manager for one run
            provider_factory: Callable returning an unconnected DirectoryProvider
        """
        self.config = config
        self.ad_config = config.get('active_directory', {})
        self.error_config = config.get('error_handling', {})
        self.store_factory = store_factory
        self.provider_factory = provider_factory or (
            lambda: DirectoryProvider(self.ad_config, self.error_config)
        )
        self._run_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_sync(self) -> SyncRunResult:
        """
        Run one reconciliation pass.

        Never raises; every failure is reported in the returned result.
        """
        result = SyncRunResult(started_at=utcnow())

        if not self._run_lock.acquire(blocking=False):
            result.errors.append(ERROR_IN_PROGRESS)
            result.finished_at = utcnow()
            logger.warning("Directory sync requested while another run is in progress")
            return result

        try:
            self._run(result)
        finally:
            self._run_lock.release()
            result.finished_at = utcnow()

        return result

    def _run(self, result: SyncRunResult):
        if not self.ad_config.get('enabled', False):
            result.errors.append(ERROR_DISABLED)
            return

        if not self.ad_config.get('server_url') or not self.ad_config.get('domain'):
            result.errors.append(ERROR_NOT_CONFIGURED)
            return

        try:
            with self.store_factory() as store:
                mappings = store.list_active_group_mappings()
                if not mappings:
                    result.errors.append(ERROR_NO_MAPPINGS)
                    return

                with self.provider_factory() as provider:
                    provider.connect()

                    state = build_desired_state(mappings, lambda name: self._resolve_with_retry(provider, name))
                    result.errors.extend(state.errors)

                    self.apply_desired_state(store, state, result)

                if state.group_failed:
                    logger.warning("Skipping deactivation because at least one AD group could not be processed")
                else:
                    self.deactivate_missing(store, state, result)

            result.success = True
            logger.info(f"AD sync completed. Created: {result.users_created}, Updated: {result.users_updated}, "
                        f"Deactivated: {result.users_deactivated}, Roles changed: {result.roles_changed}")

        except LDAPConnectionError as e:
            result.connection_failed = True
            result.errors.append(f"AD sync failed: {e}")
            logger.error(f"AD sync failed, directory unreachable: {e}")
        except Exception as e:
            result.errors.append(f"AD sync failed: {e}")
            logger.error(f"AD sync failed with unexpected error: {e}", exc_info=True)

    def _resolve_with_retry(self, provider: DirectoryProvider, group_name: str):
        """Resolve one group, retrying transient failures."""
        return retry_call(
            provider.resolve_group_members,
            args=(group_name,),
            max_attempts=self.error_config.get('max_retries', 3) + 1,
            delay=self.error_config.get('retry_wait_seconds', 5),
            should_retry=lambda e: not isinstance(e, GroupNotFoundError) and is_retryable_error(e),
            on_retry=create_retry_callback(f"Resolving AD group '{group_name}'")
        )

    def apply_desired_state(self, store: UserStore, state: DesiredState, result: SyncRunResult):
        """Create or update one account per desired identity."""
        for desired in state.users.values():
            try:
                user = store.find_user_by_identity(desired.identity)
                if user is None:
                    self._create_user(store, desired)
                    result.users_created += 1
                else:
                    updated, role_changed = self._update_user(store, user, desired)
                    if updated:
                        result.users_updated += 1
                    if role_changed:
                        result.roles_changed += 1
            except Exception as e:
                error = str(e) or e.__class__.__name__
                if f"'{desired.identity}'" not in error:
                    error = f"Failed to sync user '{desired.identity}': {error}"
                result.errors.append(error)
                logger.error(error)
                security_logger.log_user_operation("sync", desired.identity, False)

    def _create_user(self, store: UserStore, desired: DesiredUser) -> LocalUser:
        domain = self.ad_config.get('domain', '')
        email = desired.email or f"{desired.identity}@{domain}"
        display_name = desired.display_name or desired.identity
        user = store.create_user(desired.identity, display_name, email, desired.role)
        logger.info(f"Created user '{desired.identity}' with role {desired.role.value}")
        security_logger.log_user_operation("create", desired.identity, True)
        return user

    def _update_user(self, store: UserStore, user: LocalUser, desired: DesiredUser) -> Tuple[bool, bool]:
        """Refresh attributes, reactivate and correct the role; returns (updated, role_changed).

        Everything for one user is committed together, so a failed write
        leaves the stored account as it was.
        """
        changed_fields = []
        if desired.display_name and user.display_name != desired.display_name:
            user.display_name = desired.display_name
            changed_fields.append('display name')
        if desired.email and user.email != desired.email:
            user.email = desired.email
            changed_fields.append('email')
        if not user.is_active:
            user.is_active = True
            changed_fields.append('reactivated')

        current_role = store.get_role(user)
        # Several stored assignments count as a mismatch even if the first one matches
        role_changed = len(user.roles) != 1 or current_role != desired.role
        if not changed_fields and not role_changed:
            return False, False

        store.update_user(user, desired.role if role_changed else None)

        if changed_fields:
            logger.info(f"Updated user '{desired.identity}': {', '.join(changed_fields)}")
        if role_changed:
            security_logger.log_user_operation(f"role_change:{desired.role.value}", desired.identity, True)
            logger.info(f"Changed role for '{desired.identity}' from "
                        f"{current_role.value if current_role else 'None'} to {desired.role.value}")
        return True, role_changed

    def deactivate_missing(self, store: UserStore, state: DesiredState, result: SyncRunResult):
        """Deactivate active external accounts that no mapped group contains any more."""
        for user in store.list_active_external_users():
            if not user.identity_key or user.identity_key.lower() in state.users:
                continue
            try:
                store.deactivate_user(user)
                result.users_deactivated += 1
                security_logger.log_user_operation("deactivate", user.identity_key, True)
                logger.info(f"Deactivated user '{user.identity_key}' (no longer in any mapped AD group)")
            except Exception as e:
                error = f"Failed to deactivate user '{user.identity_key}': {e}"
                result.errors.append(error)
                logger.error(error)
