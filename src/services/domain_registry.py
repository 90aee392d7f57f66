"""
Durable registry of confirmed spam domains.

Backed by a JSON document of the form ``{"domains": [...]}``. Domain keys are
case-insensitive and stored upper-case. The registry is append-mostly: the
pipeline only ever adds domains.
"""

import logging
from typing import List, Optional
from urllib.parse import urlparse

from domain.models import SpamDomain, utc_now
from .json_store import JsonDocumentStore

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = 'SpamDomains.json'


def normalize_domain(domain: str) -> str:
    """
    Normalize a domain to its canonical upper-case key.

    Accepts bare domains, ``@domain`` fragments, email addresses and URLs
    pasted by a reviewer.

    Args:
        domain: Raw domain text

    Returns:
        str: Upper-case domain

    Raises:
        ValueError: If nothing usable remains after normalization

    Example:
        >>> normalize_domain(" https://Spammer.com/offer ")
        'SPAMMER.COM'
    """
    text = (domain or '').strip()
    if '://' in text:
        text = urlparse(text).hostname or ''
    if '@' in text:
        text = text.rsplit('@', 1)[1]
    text = text.split('/', 1)[0].strip().strip('.')
    if not text:
        raise ValueError(f"Invalid domain: {domain!r}")
    return text.upper()


class DomainRegistry:
    """
    Persistent set of blocked sender domains.

    Args:
        path: JSON file backing the registry
    """

    def __init__(self, path):
        self._store = JsonDocumentStore(path, 'domains')

    @property
    def path(self):
        return self._store.path

    def add(self, domain: str, reason: Optional[str] = None) -> bool:
        """
        Add a domain to the registry.

        Args:
            domain: Domain in any casing
            reason: Optional reason for blocking

        Returns:
            bool: True if added, False if it was already present (no write)
        """
        key = normalize_domain(domain)
        with self._store.transaction() as items:
            if any(str(item.get('domain', '')).upper() == key for item in items):
                logger.info(f"Domain already blocked: {key}")
                return False
            items.append(SpamDomain(domain=key, added_at=utc_now(), reason=reason).to_dict())

        logger.info(f"Blocked domain: {key} (reason={reason})")
        return True

    def contains(self, domain: str) -> bool:
        """Case-insensitive membership test."""
        try:
            key = normalize_domain(domain)
        except ValueError:
            return False
        return any(str(item.get('domain', '')).upper() == key for item in self._store.load())

    def list(self) -> List[SpamDomain]:
        """All blocked domains in insertion order."""
        return [SpamDomain.from_dict(item) for item in self._store.load()]

    def names(self) -> List[str]:
        """Domain keys only, for handing to the classifier."""
        return [entry.domain for entry in self.list() if entry.domain]

    def count(self) -> int:
        return len(self._store.load())
