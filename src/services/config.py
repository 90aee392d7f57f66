"""
Runtime configuration for the spam triage pipeline.

All settings come from environment variables (Lambda configuration or a
local shell). Invalid values raise ConfigurationError at load time rather
than failing halfway through a scan.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .candidate_queue import DEFAULT_FILENAME as CANDIDATES_FILENAME
from .domain_registry import DEFAULT_FILENAME as DOMAINS_FILENAME
from .review_queue import DEFAULT_FILENAME as REVIEW_FILENAME

logger = logging.getLogger(__name__)

# Lambda only allows writes under /tmp
DEFAULT_DATA_DIR = '/tmp/spam-triage'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _parse_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _parse_optional_int(env: Mapping[str, str], name: str, minimum: int = 1) -> Optional[int]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    return _parse_int(env, name, 0, minimum=minimum)


def _parse_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('0', 'false', 'no', 'off'):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got: {raw!r}")


@dataclass
class SpamFilterSettings:
    """
    Settings for the scan loop, the stores and the collaborators.

    Attributes:
        batch_size: Messages fetched per batch
        delay_between_batches_seconds: Pause between batches
        max_batches: Iteration cap per run (None = until the inbox is exhausted)
        max_consecutive_failures: Batches in a row with errors and no progress before giving up
        data_dir: Directory holding the three JSON stores
        domains_file / candidates_file / review_file: Store file names inside data_dir
        inbox_folder: Mailbox folder scanned for new messages
        junk_folder: Mailbox folder spam is moved to
        dedup_failed_messages: Add messages whose classification failed to the dedup set
        cleanup_search_limit: Max messages per domain handled by a cleanup sweep
    """
    batch_size: int = 10
    delay_between_batches_seconds: int = 30
    max_batches: Optional[int] = None
    max_consecutive_failures: int = 3
    data_dir: str = DEFAULT_DATA_DIR
    domains_file: str = DOMAINS_FILENAME
    candidates_file: str = CANDIDATES_FILENAME
    review_file: str = REVIEW_FILENAME
    inbox_folder: str = 'INBOX'
    junk_folder: str = 'Junk'
    dedup_failed_messages: bool = False
    cleanup_search_limit: int = 100

    @property
    def domains_path(self) -> Path:
        return Path(self.data_dir) / self.domains_file

    @property
    def candidates_path(self) -> Path:
        return Path(self.data_dir) / self.candidates_file

    @property
    def review_path(self) -> Path:
        return Path(self.data_dir) / self.review_file

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'SpamFilterSettings':
        """
        Load settings from environment variables.

        Args:
            env: Mapping to read from (defaults to os.environ)

        Raises:
            ConfigurationError: If any value is malformed
        """
        env = os.environ if env is None else env
        settings = cls(
            batch_size=_parse_int(env, 'SPAM_BATCH_SIZE', 10, minimum=1),
            delay_between_batches_seconds=_parse_int(env, 'SPAM_DELAY_BETWEEN_BATCHES_SECONDS', 30),
            max_batches=_parse_optional_int(env, 'SPAM_MAX_BATCHES'),
            max_consecutive_failures=_parse_int(env, 'SPAM_MAX_CONSECUTIVE_FAILURES', 3, minimum=1),
            data_dir=env.get('SPAM_DATA_DIR', DEFAULT_DATA_DIR) or DEFAULT_DATA_DIR,
            domains_file=env.get('SPAM_DOMAINS_FILE', DOMAINS_FILENAME) or DOMAINS_FILENAME,
            candidates_file=env.get('SPAM_CANDIDATES_FILE', CANDIDATES_FILENAME) or CANDIDATES_FILENAME,
            review_file=env.get('SPAM_REVIEW_FILE', REVIEW_FILENAME) or REVIEW_FILENAME,
            inbox_folder=env.get('SPAM_INBOX_FOLDER', 'INBOX') or 'INBOX',
            junk_folder=env.get('SPAM_JUNK_FOLDER', 'Junk') or 'Junk',
            dedup_failed_messages=_parse_bool(env, 'SPAM_DEDUP_FAILED_MESSAGES', False),
            cleanup_search_limit=_parse_int(env, 'SPAM_CLEANUP_SEARCH_LIMIT', 100, minimum=1),
        )
        logger.info(
            f"Spam filter settings: batch_size={settings.batch_size}, "
            f"delay={settings.delay_between_batches_seconds}s, "
            f"max_batches={settings.max_batches}, data_dir={settings.data_dir}"
        )
        return settings


@dataclass
class ImapSettings:
    """Connection settings for the IMAP/SMTP mailbox."""
    host: str
    username: str
    password: str
    port: int = 993
    smtp_host: Optional[str] = None
    smtp_port: int = 465

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'ImapSettings':
        """
        Raises:
            ConfigurationError: If host or credentials are missing
        """
        env = os.environ if env is None else env
        host = env.get('IMAP_HOST', '').strip()
        username = env.get('IMAP_USERNAME', '').strip()
        password = env.get('IMAP_PASSWORD', '')

        missing = [
            name for name, value in (
                ('IMAP_HOST', host), ('IMAP_USERNAME', username), ('IMAP_PASSWORD', password)
            ) if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Missing mailbox configuration: {', '.join(missing)}. "
                f"Please configure these in your Lambda environment."
            )

        return cls(
            host=host,
            username=username,
            password=password,
            port=_parse_int(env, 'IMAP_PORT', 993, minimum=1),
            smtp_host=env.get('SMTP_HOST', '').strip() or None,
            smtp_port=_parse_int(env, 'SMTP_PORT', 465, minimum=1),
        )
