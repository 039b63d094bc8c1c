"""
Main orchestrator for Directory Group Sync.

Loads the configuration, connects the configured directories and runs each
sync job in turn, collecting per-job summaries and sending notifications.
"""

import sys
import json
import logging
import argparse
import importlib
from datetime import datetime
from typing import Any, Dict, List, Optional

from directory_sync.config import ConfigurationError, load_config
from directory_sync.gateways.base import DirectoryAPIBase, DirectoryAPIError, DirectoryAuthenticationError
from directory_sync.gateways.jumpcloud import JumpCloudDirectoryAPI
from directory_sync.jobs import AttributeJob, MembershipJob, SyncJob
from directory_sync.logging_setup import setup_logging
from directory_sync.notifications import (
    send_authentication_failure,
    send_configuration_error,
    send_failure_notification,
    send_job_error_notification,
    send_success_summary,
    test_notification_config
)
from directory_sync.outcomes import RunSummary
from directory_sync.sources.base import SourceReader
from directory_sync.sources.csv_source import CsvSourceReader
from directory_sync.sources.devices import JumpCloudDeviceSource
from directory_sync.sources.directory import DirectoryGroupSource
from directory_sync.sources.ldap_source import LDAPSourceReader

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_JOB_ERRORS = 1
EXIT_CONFIGURATION = 2
EXIT_AUTHENTICATION = 3
EXIT_UNEXPECTED = 4


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class SyncOrchestrator:
    """
    Main orchestrator for directory group synchronization.

    Runs the configured jobs one after another. A failing job never stops the
    jobs after it.
    """

    def __init__(self, config_path: Optional[str] = None, job_names: Optional[List[str]] = None,
                 dry_run: bool = False, allow_full_removal_when_empty: bool = False):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            job_names: Run only these jobs (all jobs when None)
            dry_run: Plan and log changes without applying them
            allow_full_removal_when_empty: Allow full syncs with an empty
                source roster for every job
        """
        self.config = None
        self.config_path = config_path
        self.job_names = job_names
        self.dry_run = dry_run
        self.allow_full_removal_when_empty = allow_full_removal_when_empty
        self.directories: Dict[str, DirectoryAPIBase] = {}

        self.run_stats = {
            'jobs_processed': 0,
            'jobs_failed': 0,
            'jobs_aborted_by_configuration': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'totals': {},
            'job_details': {}
        }

    def run(self) -> int:
        """
        Run every selected job.

        Returns:
            Exit code: 0 success, 1 job errors, 2 configuration error,
            3 directory authentication failure, 4 unexpected error
        """
        try:
            self.run_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info("Starting Directory Group Sync" + (" (dry run)" if self.dry_run else ""))

            jobs = self._selected_jobs()
            self._connect_directories(jobs)
            self._process_jobs(jobs)

            self.run_stats['end_time'] = datetime.now()
            self.run_stats['runtime_seconds'] = (
                self.run_stats['end_time'] - self.run_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()
            self._send_success_notification()

            if self.run_stats['jobs_aborted_by_configuration'] > 0:
                logger.error(f"{self.run_stats['jobs_aborted_by_configuration']} jobs aborted by configuration errors")
                return EXIT_CONFIGURATION
            if self.run_stats['jobs_failed'] > 0:
                logger.warning(f"Sync completed with {self.run_stats['jobs_failed']} failed jobs")
                return EXIT_JOB_ERRORS
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._send_configuration_error(str(e))
            return EXIT_CONFIGURATION
        except DirectoryAuthenticationError as e:
            logger.error(f"Directory authentication error: {e}")
            return EXIT_AUTHENTICATION
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _selected_jobs(self) -> List[Dict[str, Any]]:
        jobs = self.config.get('jobs', [])
        if not self.job_names:
            return jobs

        known = {job['name'] for job in jobs}
        unknown = [name for name in self.job_names if name not in known]
        if unknown:
            raise ConfigurationError(f"Unknown jobs requested: {', '.join(unknown)}")
        return [job for job in jobs if job['name'] in self.job_names]

    def _directory_config(self, name: str) -> Dict[str, Any]:
        for directory_config in self.config.get('directories', []):
            if directory_config['name'] == name:
                return directory_config
        raise ConfigurationError(f"Unknown directory '{name}'")

    def _connect_directories(self, jobs: List[Dict[str, Any]]):
        """Load and authenticate every directory the selected jobs use."""
        names = []
        for job in jobs:
            for name in (job['destination'], (job.get('source') or {}).get('directory')):
                if name and name not in names:
                    names.append(name)

        for name in names:
            directory = self._load_directory_module(self._directory_config(name))
            self.directories[name] = directory
            if not directory.authenticate():
                self._send_authentication_failure(name, f"Authentication failed for directory {name}")
                raise DirectoryAuthenticationError(f"Authentication failed for directory {name}")
            logger.info(f"Connected to directory {name}")

    def _load_directory_module(self, directory_config: Dict[str, Any]) -> DirectoryAPIBase:
        """Dynamically load a directory module and create its API instance."""
        module_name = directory_config['module']
        directory_name = directory_config['name']

        try:
            directory_module = importlib.import_module(f"directory_sync.gateways.{module_name}")
        except ImportError as e:
            raise ConfigurationError(f"Failed to import directory module {module_name}: {e}")

        directory_class = None
        for attr_name in dir(directory_module):
            attr = getattr(directory_module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, DirectoryAPIBase) and
                    attr is not DirectoryAPIBase):
                directory_class = attr
                break

        if not directory_class:
            raise ConfigurationError(f"No DirectoryAPIBase subclass found in module {module_name}")

        try:
            return directory_class(directory_config)
        except (KeyError, ValueError, DirectoryAPIError) as e:
            raise ConfigurationError(f"Failed to initialize directory {directory_name}: {e}")

    def _build_source(self, job_config: Dict[str, Any]) -> SourceReader:
        source_config = job_config['source']
        source_type = source_config['type']

        if source_type == 'csv':
            return CsvSourceReader.from_config(source_config, job_config.get('group'))
        if source_type == 'directory_group':
            return DirectoryGroupSource(self.directories[source_config['directory']], source_config['group'])
        if source_type == 'ldap':
            return LDAPSourceReader(self.config['ldap'], source_config['group_dn'],
                                    use_memberof=source_config.get('use_memberof', True))
        if source_type == 'jumpcloud_devices':
            directory = self.directories[source_config['directory']]
            if not isinstance(directory, JumpCloudDirectoryAPI):
                raise ConfigurationError(f"Device sources need a JumpCloud directory, got {directory.name}")
            return JumpCloudDeviceSource(directory, source_config.get('os'))

        raise ConfigurationError(f"Unknown source type '{source_type}'")

    def _build_job(self, job_config: Dict[str, Any]) -> SyncJob:
        destination = self.directories[job_config['destination']]
        source = self._build_source(job_config)

        if job_config.get('type', 'membership') == 'attributes':
            return AttributeJob(job_config, destination, source, dry_run=self.dry_run)

        return MembershipJob(
            job_config, destination, source,
            removal_batch_size=self.config.get('sync', {}).get('removal_batch_size', 100),
            dry_run=self.dry_run,
            allow_full_removal_when_empty=True if self.allow_full_removal_when_empty else None
        )

    def _process_jobs(self, jobs: List[Dict[str, Any]]):
        summaries = []
        for job_config in jobs:
            summaries.append(self._process_job(job_config))
        self.run_stats['totals'] = RunSummary.total(summaries).as_dict()

    def _process_job(self, job_config: Dict[str, Any]) -> RunSummary:
        """Run one job; failures are recorded and never raised."""
        job_name = job_config['name']
        job_start_time = datetime.now()
        logger.info(f"Processing job: {job_name}")

        job = None
        status = 'completed'
        error = None
        try:
            job = self._build_job(job_config)
            job.run()
        except ConfigurationError as e:
            status = 'aborted'
            error = str(e)
            self.run_stats['jobs_aborted_by_configuration'] += 1
            logger.error(f"Job {job_name} aborted before any change: {e}")
        except Exception as e:
            status = 'failed'
            error = str(e)
            logger.error(f"Job {job_name} failed: {e}", exc_info=True)

        summary = job.summary if job is not None else RunSummary()
        if status == 'completed' and summary.errors > 0:
            status = 'completed_with_errors'

        if status == 'completed':
            self.run_stats['jobs_processed'] += 1
        else:
            self.run_stats['jobs_failed'] += 1
            self._send_job_notification(job_name, job, error)

        runtime = (datetime.now() - job_start_time).total_seconds()
        self.run_stats['job_details'][job_name] = {
            'status': status,
            'error': error,
            'runtime_seconds': runtime,
            'summary': summary.as_dict()
        }
        logger.info(f"Completed job: {job_name} ({status}) in {runtime:.2f} seconds: {summary}")
        return summary

    def _send_job_notification(self, job_name: str, job: Optional[SyncJob], error: Optional[str]):
        notifications_config = self.config.get('notifications', {})
        if error is not None:
            self._send_failure_notification(f"Job Failed: {job_name}", error)
            return
        messages = [record.message or '' for record in job.aggregator.failures()]
        send_job_error_notification(job_name, messages, notifications_config)

    def _send_failure_notification(self, title: str, error_message: str):
        notifications_config = (self.config or {}).get('notifications', {})
        send_failure_notification(title, error_message, notifications_config)

    def _send_configuration_error(self, error_message: str):
        notifications_config = (self.config or {}).get('notifications', {})
        send_configuration_error(error_message, self.config_path, notifications_config)

    def _send_authentication_failure(self, directory_name: str, error_message: str):
        notifications_config = self.config.get('notifications', {})
        send_authentication_failure(directory_name, error_message, notifications_config)

    def _send_success_notification(self):
        notifications_config = self.config.get('notifications', {})
        send_success_summary(self.run_stats, notifications_config)

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.run_stats
        totals = stats['totals']

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Jobs processed: {stats['jobs_processed']}")
        logger.info(f"Jobs failed: {stats['jobs_failed']}")
        logger.info(f"Input entries: {totals.get('total_input', 0)}")
        logger.info(f"Added: {totals.get('added', 0)}")
        logger.info(f"Removed: {totals.get('removed', 0)}")
        logger.info(f"Updated: {totals.get('updated', 0)}")
        logger.info(f"Skipped: {totals.get('skipped', 0)}")
        logger.info(f"Errors: {totals.get('errors', 0)}")

        for job_name, job_stats in stats['job_details'].items():
            summary = job_stats['summary']
            logger.info(f"--- {job_name} ({job_stats['status']}) ---")
            logger.info(f"  Runtime: {job_stats['runtime_seconds']:.2f}s")
            logger.info(f"  Added: {summary['added']}, removed: {summary['removed']}, "
                        f"updated: {summary['updated']}, skipped: {summary['skipped']}, "
                        f"errors: {summary['errors']}")
            if job_stats['error']:
                logger.info(f"  Error: {job_stats['error']}")

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
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        directory_checks = {}
        for directory_config in self.config.get('directories', []):
            directory_name = directory_config['name']
            try:
                directory = self._load_directory_module(directory_config)
                try:
                    authenticated = directory.authenticate()
                finally:
                    directory.close_connection()
                if not authenticated:
                    raise SyncError('authentication failed')
                directory_checks[directory_name] = {
                    'status': 'pass',
                    'message': 'Module loaded and authenticated'
                }
            except Exception as e:
                directory_checks[directory_name] = {
                    'status': 'fail',
                    'message': f'Directory check failed: {e}'
                }
                health_status['status'] = 'unhealthy'
        health_status['checks']['directories'] = directory_checks

        ldap_config = self.config.get('ldap')
        if ldap_config:
            try:
                reader = LDAPSourceReader(ldap_config, group_dn='')
                reader.connect()
                reader.disconnect()
                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful'
                }
            except Exception as e:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'

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
        for directory in self.directories.values():
            directory.close_connection()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Directory Group Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--job', '-j', action='append', dest='jobs', metavar='NAME',
                        help='Run only the named job (may be repeated)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Plan and log changes without applying them')
    parser.add_argument('--allow-full-removal-when-empty', action='store_true',
                        help='Allow full syncs to empty groups whose source has no members')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(
        config_path=args.config,
        job_names=args.jobs,
        dry_run=args.dry_run,
        allow_full_removal_when_empty=args.allow_full_removal_when_empty
    )

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(EXIT_CONFIGURATION)

        if test_notification_config(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
