"""
Logging setup for Directory Group Sync.

Every run logs to ``<log_dir>/directory-sync.log`` (rotated at midnight and
kept for ``retention_days``) and, for interactive runs, to the console, so an
operator sees one progress line per membership change as it happens. Secrets
are masked before any handler writes a record.

The ``audit`` logger carries one line per attempted change and per
authentication attempt; it propagates to the same handlers.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple

logger = logging.getLogger(__name__)

LOG_FILE_NAME = 'directory-sync.log'

FILE_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'
CONSOLE_FORMAT = '%(asctime)s %(levelname)-8s %(message)s'

SENSITIVE_KEYWORDS = (
    'password', 'bind_password', 'smtp_password', 'secret', 'client_secret',
    'token', 'access_token', 'refresh_token', 'api_key', 'x-api-key',
    'credential', 'pwd', 'authorization', 'bearer',
)


def _build_scrub_patterns():
    # Authorization headers go first so the scheme word survives
    patterns = [
        (re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE), r'\1****'),
    ]
    for keyword in SENSITIVE_KEYWORDS:
        escaped = re.escape(keyword)
        patterns.append((
            re.compile(rf'({escaped}\s*[=:]\s*)(?!"|(?:Bearer|Basic)\s)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE),
            r'\1****\2'
        ))
        patterns.append((re.compile(rf'("{escaped}"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'))
    return patterns


class SensitiveDataFilter(logging.Filter):
    """Masks passwords, tokens, API keys and Authorization headers."""

    patterns = _build_scrub_patterns()

    def scrub(self, text: str) -> str:
        for pattern, replacement in self.patterns:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record):
        record.msg = self.scrub(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(self.scrub(a) if isinstance(a, str) else a for a in record.args)
        return True


class LogSettings(NamedTuple):
    level: str
    log_dir: str
    rotation: str
    retention_days: int
    console_output: bool
    console_level: str

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'LogSettings':
        config = config or {}
        return cls(
            level=str(config.get('level', 'INFO')).upper(),
            log_dir=config.get('log_dir', 'logs'),
            rotation=str(config.get('rotation', 'daily')).lower(),
            retention_days=int(config.get('retention_days', 7)),
            console_output=bool(config.get('console_output', True)),
            console_level=str(config.get('console_level', 'INFO')).upper(),
        )


def _level(name: str) -> int:
    return getattr(logging, name, logging.INFO)


class LoggingManager:
    """Configures the root logger once per process."""

    def __init__(self):
        self.configured = False
        self.settings = None
        self.log_dir = None

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Install the file and console handlers on the root logger.

        Args:
            config: The ``logging`` configuration block
        """
        if self.configured:
            return

        self.settings = LogSettings.from_config(config)
        self.log_dir = self._prepare_log_directory(self.settings.log_dir)

        root_logger = logging.getLogger()
        root_logger.setLevel(_level(self.settings.level))
        root_logger.handlers.clear()
        for handler in self._build_handlers():
            root_logger.addHandler(handler)
        self.configured = True

        logger.info(f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at {self.settings.level} "
                    f"({self.settings.rotation} rotation, {self.settings.retention_days} days kept)")
        for removed in self.cleanup_old_logs():
            logger.info(f"Removed old log file: {removed}")

    @staticmethod
    def _prepare_log_directory(log_dir: str) -> str:
        if not log_dir:
            return '.'
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            # Logging is not configured yet, so this can only go to stderr
            print(f"Warning: cannot create log directory {log_dir} ({e}), logging to the current directory")
            return '.'
        return log_dir

    def _build_handlers(self) -> List[logging.Handler]:
        settings = self.settings
        scrubber = SensitiveDataFilter()
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if settings.rotation in ('daily', 'midnight'):
            file_handler = logging.handlers.TimedRotatingFileHandler(
                log_file, when='midnight', backupCount=settings.retention_days, encoding='utf-8'
            )
            file_handler.suffix = '%Y-%m-%d'
        else:
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(_level(settings.level))
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        file_handler.addFilter(scrubber)
        handlers = [file_handler]

        if settings.console_output:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(settings.console_level))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            console_handler.addFilter(scrubber)
            handlers.append(console_handler)

        return handlers

    def cleanup_old_logs(self) -> List[str]:
        """
        Delete rotated log files older than the retention period.

        Returns:
            Paths of the removed files
        """
        if not self.log_dir or not self.settings or self.settings.retention_days <= 0:
            return []

        cutoff = datetime.now() - timedelta(days=self.settings.retention_days)
        removed = []
        for path in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(path)) < cutoff:
                    os.remove(path)
                    removed.append(path)
            except OSError as e:
                logger.warning(f"Could not remove old log file {path}: {e}")
        return removed


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Writes audit lines for directory changes and authentication attempts."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_authentication_attempt(self, system: str, principal: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Authentication {status}: {system} principal={principal}")

    def log_change(self, operation: str, identity: str, destination: str, outcome: str):
        self.logger.info(f"Change {operation} identity={identity} destination={destination} outcome={outcome}")


audit_logger = AuditLogger()
