"""
Main orchestrator for Harbor LDAP Group Sync.

This module drives a complete reconciliation run: it loads the declared
groups, enumerates Harbor once to bind them to existing groups, then creates,
renames or deletes groups until Harbor matches the declaration.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

import yaml

from harbor_group_sync.config import load_config, ConfigurationError
from harbor_group_sync.logging_setup import setup_logging
from harbor_group_sync.models import (
    DesiredGroup, OperationResult, NotFoundError, AmbiguousGroupError, ENSURE_PRESENT
)
from harbor_group_sync.notifications import (
    send_failure_notification,
    send_group_errors_notification,
    send_success_summary,
    format_runtime
)
from harbor_group_sync.provider import UserGroupProvider, GroupInstance
from harbor_group_sync.session import HarborSessionProvider, SessionError
from harbor_group_sync.transport import ApiError

logger = logging.getLogger(__name__)

ACTION_CREATE = 'create'
ACTION_RENAME = 'rename'
ACTION_DESTROY = 'destroy'
ACTION_UNCHANGED = 'unchanged'

EXIT_OK = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_HARBOR_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncAborted(SyncError):
    """Raised when a run stops because too many group operations failed."""
    pass


class SyncOrchestrator:
    """
    Main orchestrator for Harbor LDAP group reconciliation.

    Failed group operations are counted rather than raised; the run is aborted
    once ``error_handling.max_errors`` failures have accumulated.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False,
                 session_provider=None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Plan changes without applying them
            session_provider: Session provider to use instead of one built from configuration
        """
        self.config = None
        self.config_path = config_path
        self.dry_run = dry_run
        self.session_provider = session_provider
        self.provider = None

        self.sync_stats = {
            'groups_declared': 0,
            'groups_created': 0,
            'groups_renamed': 0,
            'groups_deleted': 0,
            'groups_unchanged': 0,
            'groups_failed': 0,
            'total_errors': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }
        self.errors: List[str] = []

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info("Starting Harbor LDAP Group Sync" + (" (dry run)" if self.dry_run else ""))

            self._create_provider()
            desired_groups = [DesiredGroup.from_config(g) for g in self.config.get('groups', [])]
            self.reconcile(desired_groups, purge_unmanaged=self.config.get('purge_unmanaged', False))

            self._finish_timing()
            self._log_sync_summary()

            if self.errors:
                logger.warning(f"Sync completed with {len(self.errors)} failed group operations")
                self._notify(send_group_errors_notification, self.errors)
                return EXIT_PARTIAL_FAILURE

            logger.info("Sync completed successfully")
            self._notify(send_success_summary, self.sync_stats)
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION_ERROR
        except SyncAborted as e:
            self._finish_timing()
            logger.error(str(e))
            self._log_sync_summary()
            self._notify(send_group_errors_notification, self.errors, aborted=True)
            return EXIT_PARTIAL_FAILURE
        except (SessionError, ApiError) as e:
            logger.error(f"Harbor error: {e}")
            self._notify(send_failure_notification, "Harbor Unavailable", str(e))
            return EXIT_HARBOR_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._notify(send_failure_notification, "Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _create_provider(self):
        harbor_config = self.config['harbor']
        if self.session_provider is None:
            self.session_provider = HarborSessionProvider(harbor_config, self.config.get('error_handling', {}))
        self.provider = UserGroupProvider(self.session_provider, page_size=harbor_config.get('page_size'))

    def reconcile(self, desired_groups: List[DesiredGroup], purge_unmanaged: bool = False) -> List[OperationResult]:
        """
        Converge Harbor towards the declared groups.

        Args:
            desired_groups: Declared groups
            purge_unmanaged: Delete Harbor groups that are not declared

        Returns:
            Results of the mutating operations that were issued

        Raises:
            ApiError: If the initial enumeration fails
            SyncAborted: If the error budget is exhausted
        """
        desired_map = {desired.ldap_group_dn: desired for desired in desired_groups}
        self.sync_stats['groups_declared'] = len(desired_map)

        instances = self.provider.prefetch(desired_map)
        bound = sum(1 for instance in instances if instance.resource is not None)
        logger.info(f"Matched {bound} of {len(desired_map)} declared groups to existing Harbor groups")

        results = []
        for desired in desired_map.values():
            instance = self.provider.new_instance(desired)
            result = self._converge(instance, desired)
            if result is not None:
                results.append(result)

        if purge_unmanaged:
            for instance in instances:
                if instance.resource is None:
                    result = self._apply(ACTION_DESTROY, instance, None)
                    if result is not None:
                        results.append(result)

        return results

    def plan_action(self, instance: GroupInstance, desired: DesiredGroup) -> str:
        """Decide which transition brings an instance to its declared state."""
        if desired.ensure == ENSURE_PRESENT:
            if not instance.exists():
                return ACTION_CREATE
            if instance.group_name != desired.group_name:
                return ACTION_RENAME
            return ACTION_UNCHANGED

        return ACTION_DESTROY if instance.exists() else ACTION_UNCHANGED

    def _converge(self, instance: GroupInstance, desired: DesiredGroup) -> Optional[OperationResult]:
        try:
            action = self.plan_action(instance, desired)
        except (ApiError, AmbiguousGroupError) as e:
            self._record_failure(f"Failed to check {desired.ldap_group_dn}: {e}")
            return None
        return self._apply(action, instance, desired)

    def _apply(self, action: str, instance: GroupInstance,
               desired: Optional[DesiredGroup]) -> Optional[OperationResult]:
        dn = instance.ldap_group_dn

        if action == ACTION_UNCHANGED:
            self.sync_stats['groups_unchanged'] += 1
            logger.debug(f"Group {dn} is in sync")
            return None

        if self.dry_run:
            target = f" as '{desired.group_name}'" if desired is not None and action != ACTION_DESTROY else ""
            logger.info(f"[dry run] Would {action} group {dn}{target}")
            return None

        try:
            if action == ACTION_CREATE:
                result = instance.create()
            elif action == ACTION_RENAME:
                instance.group_name = desired.group_name
                result = instance.last_result
            else:
                result = instance.destroy()
        except (NotFoundError, AmbiguousGroupError, ApiError) as e:
            self._record_failure(f"Failed to {action} group {dn}: {e}")
            return None

        if result.failed:
            self._record_failure(f"Failed to {action} group {dn}: {result.error}")
        else:
            stat_key = {
                ACTION_CREATE: 'groups_created',
                ACTION_RENAME: 'groups_renamed',
                ACTION_DESTROY: 'groups_deleted',
            }[action]
            self.sync_stats[stat_key] += 1
        return result

    def _record_failure(self, message: str):
        logger.error(message)
        self.errors.append(message)
        self.sync_stats['groups_failed'] += 1
        self.sync_stats['total_errors'] += 1

        max_errors = (self.config or {}).get('error_handling', {}).get('max_errors', 0)
        if max_errors and len(self.errors) >= max_errors:
            raise SyncAborted(f"Aborting sync after {len(self.errors)} failed group operations")

    def _finish_timing(self):
        if self.sync_stats['start_time'] is None:
            return
        self.sync_stats['end_time'] = datetime.now()
        self.sync_stats['runtime_seconds'] = (
            self.sync_stats['end_time'] - self.sync_stats['start_time']
        ).total_seconds()

    def _notify(self, send_func, *args, **kwargs):
        """Send a notification; failures are logged only."""
        if not self.config:
            return
        try:
            send_func(*args, self.config.get('notifications', {}), **kwargs)
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        logger.info(f"Groups declared: {stats['groups_declared']}")
        logger.info(f"Groups created: {stats['groups_created']}")
        logger.info(f"Groups renamed: {stats['groups_renamed']}")
        logger.info(f"Groups deleted: {stats['groups_deleted']}")
        logger.info(f"Groups unchanged: {stats['groups_unchanged']}")
        logger.info(f"Groups failed: {stats['groups_failed']}")

    def list_groups(self) -> List[Dict[str, Any]]:
        """Return every Harbor LDAP group in declaration format."""
        if self.config is None:
            self._load_configuration()
        self._create_provider()
        return [instance.to_dict() for instance in self.provider.instances()]

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
                'message': f"Configuration loaded successfully ({len(self.config['groups'])} groups declared)"
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self._create_provider()
            session = self.session_provider.login()
            health_status['checks']['harbor'] = {
                'status': 'pass',
                'message': f'Logged in to Harbor using API v{session.api_version}'
            }
            close = getattr(session.transport, 'close_connection', None)
            if close:
                close()
        except SessionError as e:
            health_status['checks']['harbor'] = {
                'status': 'fail',
                'message': f'Harbor login failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
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


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Harbor LDAP Group Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                       help='Show the changes a sync would make without applying them')
    parser.add_argument('--list', action='store_true',
                       help='Print the LDAP groups currently defined in Harbor as YAML')
    parser.add_argument('--health-check', action='store_true',
                       help='Perform health check instead of sync')

    args = parser.parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(EXIT_OK if health_status['status'] == 'healthy' else EXIT_PARTIAL_FAILURE)

    elif args.list:
        try:
            groups = orchestrator.list_groups()
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            sys.exit(EXIT_CONFIGURATION_ERROR)
        except (SessionError, ApiError) as e:
            print(f"Harbor error: {e}", file=sys.stderr)
            sys.exit(EXIT_HARBOR_ERROR)
        print(yaml.safe_dump({'groups': groups}, default_flow_style=False, sort_keys=False), end='')
        sys.exit(EXIT_OK)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
