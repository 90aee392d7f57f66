"""
Durable queue of domains awaiting human approval.

Each entry keeps an occurrence counter and at most two evidence samples.
Backed by ``{"pendingDomains": [...]}``.
"""

import logging
from typing import Iterable, List, Optional

from domain.models import PendingReviewDomain, ReviewSample, utc_now
from .domain_registry import normalize_domain
from .json_store import JsonDocumentStore

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = 'HumanReview.json'

MAX_SAMPLES_PER_DOMAIN = 2


class ReviewQueue:
    """
    Persistent set of domains pending human review.

    Args:
        path: JSON file backing the queue
    """

    def __init__(self, path):
        self._store = JsonDocumentStore(path, 'pendingDomains')

    @property
    def path(self):
        return self._store.path

    def add_or_update(
        self,
        domain: str,
        message_id: str,
        sender: str,
        subject: str,
        reason: Optional[str]
    ) -> bool:
        """
        Flag a domain, or record another occurrence of an already flagged one.

        The counter and ``last_seen`` are updated on every call. A sample is
        appended only while fewer than two are held and the message ID is not
        already among them.

        Returns:
            bool: True if a new entry was created, False if an existing one was updated
        """
        key = normalize_domain(domain)
        now = utc_now()

        with self._store.transaction() as items:
            index = next(
                (i for i, item in enumerate(items) if str(item.get('domain', '')).upper() == key),
                None
            )
            if index is None:
                entry = PendingReviewDomain(domain=key, email_count=0, first_seen=now, last_seen=now)
            else:
                entry = PendingReviewDomain.from_dict(items[index])

            entry.email_count += 1
            entry.last_seen = now

            if len(entry.samples) < MAX_SAMPLES_PER_DOMAIN and not entry.has_sample(message_id):
                entry.samples.append(ReviewSample(
                    message_id=message_id,
                    sender=sender,
                    subject=subject,
                    reason=reason,
                ))

            if index is None:
                items.append(entry.to_dict())
            else:
                items[index] = entry.to_dict()

        is_new = index is None
        logger.info(
            f"{'Flagged new' if is_new else 'Updated'} review domain: {key} "
            f"(emails={entry.email_count}, samples={len(entry.samples)})"
        )
        return is_new

    def remove(self, domain: str) -> Optional[PendingReviewDomain]:
        """
        Remove one domain.

        Returns:
            The removed entry, or None if the domain was not pending
        """
        key = normalize_domain(domain)
        removed = None
        with self._store.transaction() as items:
            for i, item in enumerate(items):
                if str(item.get('domain', '')).upper() == key:
                    removed = PendingReviewDomain.from_dict(items.pop(i))
                    break

        if removed:
            logger.info(f"Removed review domain: {key}")
        return removed

    def remove_many(self, domains: Iterable[str]) -> int:
        """
        Remove several domains (case-insensitive); unknown domains are ignored.

        Returns:
            int: Number of entries removed
        """
        keys = set()
        for domain in domains:
            try:
                keys.add(normalize_domain(domain))
            except ValueError:
                logger.warning(f"Ignoring invalid domain in removal list: {domain!r}")
        if not keys:
            return 0

        with self._store.transaction() as items:
            original_count = len(items)
            items[:] = [item for item in items if str(item.get('domain', '')).upper() not in keys]
            removed = original_count - len(items)

        logger.info(f"Removed {removed} review domain(s)")
        return removed

    def clear_all(self) -> None:
        self._store.replace_all([])
        logger.info("Cleared review queue")

    def is_pending(self, domain: str) -> bool:
        try:
            key = normalize_domain(domain)
        except ValueError:
            return False
        return any(str(item.get('domain', '')).upper() == key for item in self._store.load())

    def list(self) -> List[PendingReviewDomain]:
        return [PendingReviewDomain.from_dict(item) for item in self._store.load()]

    def names(self) -> List[str]:
        return [entry.domain for entry in self.list() if entry.domain]

    def count(self) -> int:
        return len(self._store.load())
