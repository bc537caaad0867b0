"""
Directory client for resolving group membership and validating credentials.

This module connects to Active Directory (or any LDAP directory) with a service
account, resolves a configured group name to the user accounts that belong to
it, and checks username/password pairs by binding as the user.
"""

import logging
import ssl
import time
from dataclasses import dataclass
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
MATCHING_RULE_IN_CHAIN_OID = '1.2.840.113556.1.4.1941'


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class GroupNotFoundError(LDAPQueryError):
    """Raised when a configured group does not exist in the directory."""
    pass


@dataclass(frozen=True)
class DirectoryMember:
    """A user account returned by a group membership query."""
    identity: str
    display_name: Optional[str] = None
    email: Optional[str] = None


class DirectoryProvider:
    """
    LDAP client for one directory domain.

    Membership queries use the memberOf reverse lookup, following nested
    groups through the Active Directory in-chain matching rule when enabled.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize directory client with configuration.

        Args:
            config: active_directory configuration dictionary
            error_handling: error_handling configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.domain = config.get('domain', '')
        self.bind_dn = config.get('bind_dn', '')
        self.bind_password = config.get('bind_password', '')
        self.search_base = config.get('search_base', '')
        self.user_filter = config.get('user_filter', '(&(objectCategory=person)(objectClass=user))')
        self.group_filter = config.get('group_filter', '(objectClass=group)')
        self.identity_attribute = config.get('identity_attribute', 'sAMAccountName')
        self.nested_groups = config.get('nested_groups', True)
        self.attributes = [self.identity_attribute, 'displayName', 'cn', 'mail']

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings; receive_timeout bounds every individual query
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 1000)

        error_handling = error_handling or {}
        self.max_retries = error_handling.get('max_retries', 3)
        self.retry_wait = error_handling.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish the service account connection with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max(1, max_retries or self.max_retries)
        retry_wait = self.retry_wait if retry_wait is None else retry_wait

        self.server = self._create_server()

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = self._open_connection(self.bind_dn, self.bind_password)

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to directory server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"Directory connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._discard_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)
            except LDAPConnectionError as e:
                last_exception = e
                logger.warning(f"Directory connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._discard_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)
            except Exception as e:
                last_exception = e
                logger.error(f"Unexpected error during directory connection: {e}")
                self._discard_connection()
                break

        error_msg = f"Failed to connect to directory after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _create_server(self) -> Server:
        """Create the ldap3 server object with the configured transport security."""
        try:
            tls_config = self._create_tls_config()
            server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created directory server object for {self.server_url} "
                         f"(SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
            return server
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create directory server: {e}")

    def _open_connection(self, user: str, password: str) -> Connection:
        """Open a connection and negotiate StartTLS; the caller performs the bind."""
        connection = Connection(
            self.server,
            user=user,
            password=password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )

        try:
            if not connection.open():
                raise LDAPConnectionError(f"Failed to open connection: {connection.result}")

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")
        except Exception:
            try:
                connection.unbind()
            except Exception as unbind_error:
                logger.debug(f"Ignoring error while closing failed connection: {unbind_error}")
            raise

        return connection

    def _discard_connection(self):
        """Drop a half-open service connection after a failed attempt."""
        if self.connection:
            try:
                self.connection.unbind()
            except Exception as e:
                logger.debug(f"Ignoring error while closing failed connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the directory connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close the service account connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("Directory connection closed")
            except Exception as e:
                logger.warning(f"Error closing directory connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def resolve_group_members(self, group_name: str) -> List[DirectoryMember]:
        """
        Resolve a group name to the user accounts that belong to it.

        Args:
            group_name: Group common name, sAMAccountName or full distinguished name

        Returns:
            Fully materialized list of members

        Raises:
            GroupNotFoundError: If the group does not exist
            LDAPQueryError: If the query fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to directory server")

        logger.info(f"Resolving members of group: {group_name}")

        try:
            group_dn = self._find_group_dn(group_name)
            return self._get_members_by_memberof(group_dn)
        except LDAPQueryError:
            raise
        except LDAPException as e:
            raise LDAPQueryError(f"Directory query failed: {e}")
        except Exception as e:
            raise LDAPQueryError(f"Unexpected error during directory query: {e}")

    def _find_group_dn(self, group_name: str) -> str:
        """Look up the distinguished name of a group by name."""
        if '=' in group_name and ',' in group_name:
            success = self.connection.search(
                search_base=group_name,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['cn']
            )
            if not success or not self.connection.entries:
                raise GroupNotFoundError(f"AD group '{group_name}' not found in directory.")
            return str(self.connection.entries[0].entry_dn)

        escaped = escape_filter_chars(group_name)
        search_filter = f"(&{self.group_filter}(|(cn={escaped})(sAMAccountName={escaped})))"
        success = self.connection.search(
            search_base=self._get_search_base(),
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=['cn']
        )

        if not success or not self.connection.entries:
            raise GroupNotFoundError(f"AD group '{group_name}' not found in directory.")

        if len(self.connection.entries) > 1:
            logger.warning(f"Group name '{group_name}' matched {len(self.connection.entries)} entries, "
                           f"using {self.connection.entries[0].entry_dn}")

        return str(self.connection.entries[0].entry_dn)

    def _get_members_by_memberof(self, group_dn: str) -> List[DirectoryMember]:
        """Get group members using the memberOf reverse lookup with paging."""
        escaped_dn = escape_filter_chars(group_dn)
        if self.nested_groups:
            member_clause = f"(memberOf:{MATCHING_RULE_IN_CHAIN_OID}:={escaped_dn})"
        else:
            member_clause = f"(memberOf={escaped_dn})"
        search_filter = f"(&{self.user_filter}{member_clause})"
        search_base = self._get_search_base()

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        members: Dict[str, DirectoryMember] = {}
        page_count = 0
        cookie = None

        while True:
            success = self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=self.attributes,
                paged_size=self.page_size,
                paged_cookie=cookie
            )

            if not success and self.connection.result.get('result') not in (0, None):
                raise LDAPQueryError(f"Search failed: {self.connection.result}")

            page_count += 1
            page_members = self._process_search_results()
            for member in page_members:
                members.setdefault(member.identity.lower(), member)
            logger.debug(f"Page {page_count}: Retrieved {len(page_members)} members")

            cookie = self._get_paged_cookie()
            if not cookie:
                break

        logger.info(f"Retrieved {len(members)} total members of {group_dn} across {page_count} pages")
        return list(members.values())

    def _get_paged_cookie(self) -> Optional[bytes]:
        """Return the paged results cookie of the last search, if another page exists."""
        controls = (self.connection.result or {}).get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID)
        if not paged:
            return None
        return paged.get('value', {}).get('cookie') or None

    def _process_search_results(self) -> List[DirectoryMember]:
        """Convert the entries of the last search into member records."""
        page_members = []
        for entry in self.connection.entries:
            member = self._extract_member(entry)
            if member:
                page_members.append(member)
        return page_members

    def _extract_member(self, entry) -> Optional[DirectoryMember]:
        """Extract a member record from an LDAP entry."""
        try:
            attributes = entry.entry_attributes_as_dict
        except Exception as e:
            logger.warning(f"Failed to read attributes from entry {getattr(entry, 'entry_dn', '?')}: {e}")
            return None

        def first(name: str) -> Optional[str]:
            values = attributes.get(name) or []
            if not values:
                return None
            value = str(values[0]).strip()
            return value or None

        identity = first(self.identity_attribute)
        if not identity:
            logger.debug(f"Skipping entry without {self.identity_attribute}: {entry.entry_dn}")
            return None

        return DirectoryMember(
            identity=identity,
            display_name=first('displayName') or first('cn'),
            email=first('mail')
        )

    def _get_search_base(self) -> str:
        """Return the configured search root, or the domain's base DN."""
        if self.search_base:
            return self.search_base

        if self.domain:
            return ','.join(f"DC={part}" for part in self.domain.split('.') if part)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise LDAPQueryError("Cannot determine directory search base")

    def _user_principal(self, username: str) -> str:
        """Qualify a bare account name with the domain for binding."""
        if '@' in username or '\\' in username or '=' in username:
            return username
        if self.domain:
            return f"{username}@{self.domain}"
        return username

    def validate_credentials(self, username: str, password: str) -> bool:
        """
        Check a username/password pair by binding to the directory as that user.

        Args:
            username: Account name, UPN or DOMAIN\\user
            password: Password to check

        Returns:
            True if the directory accepted the bind

        Raises:
            LDAPConnectionError: If the directory server cannot be reached
        """
        # An empty password would be treated as an unauthenticated bind and succeed
        if not username or not password:
            return False

        if self.server is None:
            self.server = self._create_server()

        try:
            connection = self._open_connection(self._user_principal(username), password)
        except LDAPSocketOpenError as e:
            raise LDAPConnectionError(f"Directory server unreachable: {e}")

        try:
            return bool(connection.bind())
        except LDAPBindError:
            return False
        finally:
            try:
                connection.unbind()
            except Exception as e:
                logger.debug(f"Ignoring error while closing credential check connection: {e}")

    def test_connection(self) -> bool:
        """
        Test directory connectivity without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect(max_retries=1, retry_wait=0)

            return bool(self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            ))
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
