"""
Main orchestrator for Directory Sync.

This module wires configuration, logging, the local database, the directory
client and the reconciler together, and provides the command line entry point
for manual sync runs, the daily scheduler, health checks and group mapping
administration.
"""

import sys
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from directory_sync.activity_log import (
    ActivityLogService, CATEGORY_AD_SYNC, CATEGORY_AUTH, CATEGORY_SYSTEM, CATEGORY_USER_MANAGEMENT
)
from directory_sync.config import load_config, ConfigurationError
from directory_sync.credentials import CredentialValidator
from directory_sync.database import create_db_engine, create_session_factory, init_db
from directory_sync.ldap_client import DirectoryProvider
from directory_sync.logging_setup import get_logging_stats, setup_logging
from directory_sync.models import Role
from directory_sync.notifications import (
    send_directory_connection_failure,
    send_failure_notification,
    send_sync_result_notification
)
from directory_sync.reconciler import CONFIGURATION_ERRORS, DirectorySyncReconciler, SyncRunResult
from directory_sync.scheduler import DailySyncScheduler
from directory_sync.store import UserStore, UserStoreError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_COMPLETED_WITH_ERRORS = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIRECTORY_UNREACHABLE = 3
EXIT_FAILURE = 4


class SyncOrchestrator:
    """
    Owns the application services for one process.

    Call initialize() before any other operation; run() and run_scheduler()
    do it themselves.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config = None
        self.engine = None
        self.session_factory = None
        self.reconciler = None
        self.activity_log = None
        self.credential_validator = None
        self.scheduler = None

    def initialize(self):
        """Load configuration and build the services."""
        if self.reconciler is not None:
            return

        self._load_configuration()
        setup_logging(self.config.get('logging', {}))

        self.engine = create_db_engine(self.config.get('database', {}))
        init_db(self.engine)
        self.session_factory = create_session_factory(self.engine)

        self.activity_log = ActivityLogService(self.session_factory)
        self.reconciler = DirectorySyncReconciler(self.config, UserStore.factory(self.session_factory))
        self.credential_validator = CredentialValidator(self.config['active_directory'])

        self._seed_group_mappings()

    def _load_configuration(self):
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _seed_group_mappings(self):
        mappings = self.config.get('group_mappings', [])
        if not mappings:
            return
        with UserStore(self.session_factory()) as store:
            added = store.seed_group_mappings(mappings)
        if added:
            logger.info(f"Seeded {added} AD group mappings from configuration")

    def run(self) -> int:
        """
        Run one sync and report it.

        Returns:
            Exit code
        """
        try:
            self.initialize()
            logger.info("Starting directory sync")
            result = self.sync_now(performed_by='System (CLI)')
            return self._exit_code(result)

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_FAILURE
        finally:
            self._cleanup()

    def sync_now(self, performed_by: str = 'System', trigger: str = 'Manual') -> SyncRunResult:
        """Run the reconciler, record the run in the activity log and send notifications."""
        result = self.reconciler.run_sync()
        self._record_result(result, performed_by, trigger)
        return result

    def _record_result(self, result: SyncRunResult, performed_by: str, trigger: str):
        action = "Scheduled AD Sync" if trigger == 'Scheduled' else "AD Sync"
        self.activity_log.log(
            action,
            result.summary,
            performed_by,
            CATEGORY_AD_SYNC,
            status='Success' if result.success else 'Failed'
        )
        self._log_sync_summary(result)

        notifications_config = self.config.get('notifications', {})
        try:
            if result.connection_failed:
                retry_count = self.config.get('error_handling', {}).get('max_retries', 3)
                send_directory_connection_failure(result.errors[-1], notifications_config, retry_count)
            elif result.errors and result.errors[0] in CONFIGURATION_ERRORS:
                logger.debug("Not notifying for a configuration guard")
            else:
                send_sync_result_notification(result, notifications_config, trigger)
        except Exception as e:
            logger.error(f"Failed to send sync notification: {e}")

    def _exit_code(self, result: SyncRunResult) -> int:
        if result.success:
            return EXIT_COMPLETED_WITH_ERRORS if result.errors else EXIT_SUCCESS
        if result.connection_failed:
            return EXIT_DIRECTORY_UNREACHABLE
        if result.errors and result.errors[0] in CONFIGURATION_ERRORS:
            return EXIT_CONFIGURATION_ERROR
        return EXIT_FAILURE

    def _log_sync_summary(self, result: SyncRunResult):
        logger.info("=== Sync Summary ===")
        logger.info(f"Status: {'success' if result.success else 'failed'}")
        logger.info(f"Total runtime: {result.runtime_seconds:.2f} seconds")
        logger.info(f"Users created: {result.users_created}")
        logger.info(f"Users updated: {result.users_updated}")
        logger.info(f"Users deactivated: {result.users_deactivated}")
        logger.info(f"Roles changed: {result.roles_changed}")
        for error in result.errors:
            logger.warning(f"  Error: {error}")

    def run_scheduler(self) -> int:
        """Run the daily scheduler in the foreground until interrupted."""
        try:
            self.initialize()
            self.scheduler = DailySyncScheduler(
                self.reconciler,
                self.config['active_directory'],
                on_result=lambda result: self._record_result(result, 'System (Scheduled)', 'Scheduled')
            )
            if not self.scheduler.start():
                return EXIT_CONFIGURATION_ERROR

            while not self.scheduler.wait(timeout=60):
                pass
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIGURATION_ERROR
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping scheduler")
            return EXIT_SUCCESS
        finally:
            if self.scheduler:
                self.scheduler.stop(timeout=5)
            self._cleanup()

    def validate_credentials(self, username: str, password: str, ip_address: Optional[str] = None) -> bool:
        """Check directory credentials and record the attempt."""
        is_valid = self.credential_validator.validate(username, password)
        if is_valid:
            self.activity_log.log("AD Login", f"AD user '{username}' authenticated successfully.",
                                  username, CATEGORY_AUTH, ip_address)
        else:
            self.activity_log.log("AD Login Failed",
                                  f"Active Directory authentication failed for user '{username}'.",
                                  username, CATEGORY_AUTH, ip_address, status='Failed')
        return is_valid

    def list_group_mappings(self) -> List[Dict[str, Any]]:
        with UserStore(self.session_factory()) as store:
            return [
                {
                    'group': mapping.group_name,
                    'role': mapping.mapped_role.value,
                    'active': mapping.is_active,
                    'date_added': mapping.date_added.isoformat() if mapping.date_added else None
                }
                for mapping in store.list_group_mappings()
            ]

    def add_group_mapping(self, group_name: str, role: str, performed_by: str = 'System (CLI)'):
        try:
            role = Role(role)
        except ValueError:
            raise UserStoreError(f"Invalid role '{role}'. Expected one of: {', '.join(r.value for r in Role)}")

        with UserStore(self.session_factory()) as store:
            mapping = store.add_group_mapping(group_name, role)
        self.activity_log.log("Add AD Group", f"AD group '{mapping.group_name}' added with role '{role.value}'.",
                              performed_by, CATEGORY_USER_MANAGEMENT)
        return mapping

    def remove_group_mapping(self, group_name: str, performed_by: str = 'System (CLI)') -> bool:
        with UserStore(self.session_factory()) as store:
            removed = store.remove_group_mapping(group_name)
        if removed:
            self.activity_log.log("Remove AD Group", f"AD group '{group_name}' removed.",
                                  performed_by, CATEGORY_USER_MANAGEMENT)
        return removed

    def clear_activity_log(self, performed_by: str = 'System (CLI)') -> int:
        count = self.activity_log.clear_all()
        self.activity_log.log("Clear Logs", f"Cleared {count} activity log entries.", performed_by, CATEGORY_SYSTEM)
        return count

    def _send_failure_notification(self, title: str, error_message: str):
        if not self.config:
            return
        try:
            send_failure_notification(title, error_message, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send failure notification: {e}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            engine = create_db_engine(self.config.get('database', {}))
            init_db(engine)
            with UserStore(create_session_factory(engine)()) as store:
                mapping_count = len(store.list_active_group_mappings())
            engine.dispose()
            health_status['checks']['database'] = {
                'status': 'pass',
                'message': f'Database reachable, {mapping_count} active AD group mappings'
            }
        except Exception as e:
            health_status['checks']['database'] = {
                'status': 'fail',
                'message': f'Database error: {e}'
            }
            health_status['status'] = 'unhealthy'

        ad_config = self.config.get('active_directory', {})
        if ad_config.get('enabled', False):
            with DirectoryProvider(ad_config, self.config.get('error_handling', {})) as provider:
                connected = provider.test_connection()
            if connected:
                health_status['checks']['directory'] = {
                    'status': 'pass',
                    'message': 'Directory connection successful'
                }
            else:
                health_status['checks']['directory'] = {
                    'status': 'fail',
                    'message': 'Directory connection failed'
                }
                health_status['status'] = 'unhealthy'
        else:
            health_status['checks']['directory'] = {
                'status': 'skip',
                'message': 'Active Directory integration disabled'
            }

        log_stats = get_logging_stats()
        if log_stats['configured']:
            health_status['checks']['logging'] = {
                'status': 'pass',
                'message': f"{log_stats['log_files_count']} log files, "
                           f"{log_stats['total_size_bytes']} bytes in {log_stats['log_directory']}"
            }
        else:
            health_status['checks']['logging'] = {
                'status': 'skip',
                'message': 'File logging not configured'
            }

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Notification configuration invalid: missing {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.engine is not None:
            self.engine.dispose()


def main():
    """Main entry point for the application."""
    import argparse
    import getpass
    import json

    parser = argparse.ArgumentParser(description='Directory group sync for the Lost & Found application')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument('--health-check', action='store_true',
                         help='Perform health check instead of sync')
    actions.add_argument('--test-email', action='store_true',
                         help='Send test email notification')
    actions.add_argument('--daemon', action='store_true',
                         help='Run the daily sync scheduler in the foreground')
    actions.add_argument('--validate-credentials', metavar='USERNAME',
                         help='Check a directory username and password (password is prompted)')
    actions.add_argument('--list-groups', action='store_true',
                         help='List configured AD group mappings')
    actions.add_argument('--add-group', metavar='GROUP',
                         help='Add an AD group mapping (use with --role)')
    actions.add_argument('--remove-group', metavar='GROUP',
                         help='Remove an AD group mapping')
    actions.add_argument('--clear-activity-log', action='store_true',
                         help='Delete all activity log entries')
    parser.add_argument('--role', default='User', choices=[r.value for r in Role],
                        help='Role for --add-group (default: User)')
    parser.add_argument('--json', action='store_true', help='Print the sync result as JSON')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.daemon:
        sys.exit(orchestrator.run_scheduler())

    if not any([args.test_email, args.validate_credentials, args.list_groups,
                args.add_group, args.remove_group, args.clear_activity_log]):
        if args.json:
            try:
                orchestrator.initialize()
                result = orchestrator.sync_now(performed_by='System (CLI)')
                print(json.dumps(result.to_dict(), indent=2))
                sys.exit(orchestrator._exit_code(result))
            except ConfigurationError as e:
                print(f"Configuration error: {e}", file=sys.stderr)
                sys.exit(EXIT_CONFIGURATION_ERROR)
            finally:
                orchestrator._cleanup()
        sys.exit(orchestrator.run())

    try:
        orchestrator.initialize()

        if args.test_email:
            from directory_sync.notifications import send_test_notification
            if send_test_notification(orchestrator.config.get('notifications', {})):
                print("Test email sent successfully")
                sys.exit(0)
            print("Failed to send test email")
            sys.exit(1)

        if args.validate_credentials:
            password = getpass.getpass(f"Password for {args.validate_credentials}: ")
            valid = orchestrator.validate_credentials(args.validate_credentials, password)
            print("Credentials valid" if valid else "Credentials rejected")
            sys.exit(0 if valid else 1)

        if args.list_groups:
            print(json.dumps(orchestrator.list_group_mappings(), indent=2))
            sys.exit(0)

        if args.add_group:
            mapping = orchestrator.add_group_mapping(args.add_group, args.role)
            print(f"AD group '{mapping.group_name}' added with role '{mapping.mapped_role.value}'.")
            sys.exit(0)

        if args.remove_group:
            if orchestrator.remove_group_mapping(args.remove_group):
                print(f"AD group '{args.remove_group}' removed.")
                sys.exit(0)
            print(f"AD group '{args.remove_group}' is not configured.")
            sys.exit(1)

        if args.clear_activity_log:
            count = orchestrator.clear_activity_log()
            print(f"Cleared {count} activity log entries.")
            sys.exit(0)

    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIGURATION_ERROR)
    except UserStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        orchestrator._cleanup()


if __name__ == "__main__":
    main()
