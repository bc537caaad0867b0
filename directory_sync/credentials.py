"""
Login-time credential validation against the directory.

Passwords are handed to the directory and never stored locally.
"""

import logging
from typing import Any, Callable, Dict, Optional

from directory_sync.ldap_client import DirectoryProvider, LDAPConnectionError
from directory_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)


class CredentialValidator:
    """Pass/fail credential check; every failure mode yields False."""

    def __init__(
        self,
        ad_config: Dict[str, Any],
        provider_factory: Optional[Callable[[], DirectoryProvider]] = None
    ):
        self.ad_config = ad_config
        self.provider_factory = provider_factory or (lambda: DirectoryProvider(ad_config))

    def validate(self, username: str, password: str) -> bool:
        if not self.ad_config.get('enabled', False):
            logger.warning("Directory credential validation requested while integration is disabled")
            return False

        if not self.ad_config.get('server_url') or not self.ad_config.get('domain'):
            logger.error("Active Directory domain is not configured.")
            return False

        try:
            provider = self.provider_factory()
            is_valid = bool(provider.validate_credentials(username, password))
        except LDAPConnectionError as e:
            logger.error(f"Directory server is not reachable for credential validation: {e}")
            is_valid = False
        except Exception as e:
            logger.error(f"Error validating directory credentials for user '{username}': {e}")
            is_valid = False

        logger.info(f"Directory credential validation for user '{username}': {'Success' if is_valid else 'Failed'}")
        security_logger.log_authentication_attempt('directory', username, is_valid)
        return is_valid
