"""
Prompt management utilities.

This module loads classifier prompts with the following priority:
1. S3 override (optional, for runtime updates without redeploy)
2. Local filesystem (prompts/ directory packaged with Lambda)

Prompts are cached in memory per loader with a TTL, so warm Lambda
invocations do not refetch them.
"""

import logging
import os
import time
from pathlib import Path
from typing import Dict, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .config import ConfigurationError

logger = logging.getLogger(__name__)

# Cache TTL in seconds (default: 5 minutes)
DEFAULT_CACHE_TTL_SECONDS = 300

# src/services/prompts.py -> src/prompts/
PROMPTS_DIR = Path(__file__).parent.parent / 'prompts'

# No retries and short timeouts for prompt fetches
S3_CONFIG = Config(
    retries={
        'max_attempts': 1,
        'mode': 'standard'
    },
    connect_timeout=10,
    read_timeout=30
)


def create_s3_client():
    """Create the S3 client used for prompt overrides."""
    client = boto3.client('s3', config=S3_CONFIG)
    logger.info("Prompts S3 client initialized with timeouts: connect=10s, read=30s, max_attempts=1")
    return client


class PromptLoader:
    """
    Loads prompt templates from S3 (override) or the packaged prompts directory.

    Args:
        s3_client: boto3 S3 client, only needed when bucket is set
        bucket: Optional S3 bucket holding prompt overrides
        key_prefix: Key prefix for prompt objects in the bucket
        cache_ttl_seconds: How long a loaded prompt is reused
        prompts_dir: Local directory with packaged prompts
    """

    def __init__(
        self,
        s3_client=None,
        bucket: Optional[str] = None,
        key_prefix: str = 'prompts/',
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        prompts_dir: Path = PROMPTS_DIR
    ):
        self.s3_client = s3_client
        self.bucket = bucket
        self.key_prefix = key_prefix
        self.cache_ttl_seconds = cache_ttl_seconds
        self.prompts_dir = Path(prompts_dir)
        # {cache_key: (prompt_content, timestamp)}
        self._cache: Dict[str, Tuple[str, float]] = {}

    @classmethod
    def from_env(cls, s3_client=None) -> 'PromptLoader':
        """
        Build a loader from PROMPT_BUCKET, PROMPT_KEY_PREFIX and PROMPT_CACHE_TTL.

        Raises:
            ConfigurationError: If PROMPT_CACHE_TTL is not a non-negative integer
        """
        raw_ttl = os.environ.get('PROMPT_CACHE_TTL', '').strip()
        cache_ttl = DEFAULT_CACHE_TTL_SECONDS
        if raw_ttl:
            try:
                cache_ttl = int(raw_ttl)
            except ValueError:
                raise ConfigurationError(f"PROMPT_CACHE_TTL must be an integer, got: {raw_ttl!r}")
            if cache_ttl < 0:
                raise ConfigurationError(f"PROMPT_CACHE_TTL must be >= 0, got: {cache_ttl}")

        return cls(
            s3_client=s3_client,
            bucket=os.environ.get('PROMPT_BUCKET') or None,
            key_prefix=os.environ.get('PROMPT_KEY_PREFIX', 'prompts/'),
            cache_ttl_seconds=cache_ttl,
        )

    def _load_from_filesystem(self, prompt_name: str) -> str:
        """
        Raises:
            FileNotFoundError: If prompt file doesn't exist
        """
        prompt_path = self.prompts_dir / prompt_name
        logger.info(f"Loading prompt from filesystem: {prompt_path}")

        with open(prompt_path, 'r', encoding='utf-8') as f:
            content = f.read()

        logger.info(f"Loaded prompt from filesystem: {len(content)} characters")
        return content

    def _load_from_s3(self, prompt_name: str) -> str:
        """
        Raises:
            ValueError: If no bucket or client is configured
            ClientError: If the object cannot be fetched
        """
        if not self.bucket:
            raise ValueError("PROMPT_BUCKET environment variable not set")
        if self.s3_client is None:
            raise ValueError("S3 client not configured for prompt overrides")

        s3_key = f"{self.key_prefix}{prompt_name}"
        logger.info(f"Loading prompt from S3: s3://{self.bucket}/{s3_key}")

        response = self.s3_client.get_object(Bucket=self.bucket, Key=s3_key)

        content = response['Body'].read().decode('utf-8')
        logger.info(f"Loaded prompt from S3: {len(content)} characters")
        return content

    def load_prompt(self, prompt_name: str, use_cache: bool = True) -> str:
        """
        Load prompt template with caching and fallback.

        Priority: Cache -> S3 override -> Local filesystem

        Args:
            prompt_name: Prompt file name (e.g., "spam_triage.txt")
            use_cache: Use cached version if available (default: True)

        Returns:
            str: Prompt template content

        Raises:
            ValueError: If prompt not found
        """
        cache_key = f"prompt:{prompt_name}"
        current_time = time.time()

        if use_cache and cache_key in self._cache:
            cached_content, cached_time = self._cache[cache_key]
            age_seconds = current_time - cached_time
            if age_seconds < self.cache_ttl_seconds:
                logger.debug(f"Using cached prompt: {prompt_name} (age: {int(age_seconds)}s)")
                return cached_content
            logger.info(
                f"Cache expired for prompt: {prompt_name} "
                f"(age: {int(age_seconds)}s > TTL: {self.cache_ttl_seconds}s), reloading..."
            )

        prompt_content = None

        if self.bucket:
            try:
                prompt_content = self._load_from_s3(prompt_name)
                logger.info(f"Using S3 override for prompt: {prompt_name}")
            except (ClientError, ValueError) as e:
                logger.info(
                    f"S3 override not available ({e.__class__.__name__}), "
                    f"falling back to local filesystem"
                )

        if prompt_content is None:
            try:
                prompt_content = self._load_from_filesystem(prompt_name)
            except FileNotFoundError:
                logger.error(
                    f"Prompt not found: {prompt_name}. "
                    f"Expected location: {self.prompts_dir / prompt_name}"
                )
                raise ValueError(
                    f"Prompt '{prompt_name}' not found in S3 or local filesystem"
                )

        self._cache[cache_key] = (prompt_content, current_time)
        return prompt_content

    def clear_cache(self) -> None:
        """Clear the prompt cache, forcing a reload on next use."""
        self._cache.clear()
        logger.info("Prompt cache cleared")


def format_prompt(template: str, **variables) -> str:
    """
    Format prompt template with variables.

    Substituted values are inserted verbatim; braces inside an email subject
    are not re-interpreted as format fields.

    Args:
        template: The prompt template string (with {variable} placeholders)
        **variables: Variables to substitute in the template

    Returns:
        str: Formatted prompt with all variables substituted

    Raises:
        ValueError: If a required variable is missing from the template

    Example:
        >>> format_prompt("Scan {count} emails", count=3)
        'Scan 3 emails'
    """
    try:
        return template.format(**variables)
    except KeyError as e:
        missing_var = str(e).strip("'")
        logger.error(f"Missing variable in prompt template: {missing_var}")
        raise ValueError(f"Missing required variable in prompt: {missing_var}")
