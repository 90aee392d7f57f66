"""
Durable queue of individually suspicious messages.

Candidates wait here until their sender domain is approved (and they are
swept to junk) or they are removed. Backed by ``{"candidates": [...]}``.
"""

import logging
from typing import Dict, Iterable, List

from domain.models import SpamCandidate, clamp_confidence
from .json_store import JsonDocumentStore

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = 'SpamCandidates.json'


class CandidateQueue:
    """
    Persistent set of spam candidates keyed by message ID.

    Args:
        path: JSON file backing the queue
    """

    def __init__(self, path):
        self._store = JsonDocumentStore(path, 'candidates')

    @property
    def path(self):
        return self._store.path

    def add(self, candidate: SpamCandidate) -> bool:
        """
        Record a candidate.

        The confidence score is clamped into [0, 1] before it is stored,
        whatever the caller passed in.

        Returns:
            bool: True if recorded, False if the message ID is already queued
        """
        candidate.confidence_score = clamp_confidence(candidate.confidence_score)
        candidate.sender_domain = candidate.sender_domain.upper()

        with self._store.transaction() as items:
            if any(item.get('messageId') == candidate.message_id for item in items):
                logger.info(f"Candidate already recorded for message {candidate.message_id}")
                return False
            items.append(candidate.to_dict())

        logger.info(
            f"Recorded spam candidate: message={candidate.message_id}, "
            f"domain={candidate.sender_domain}, confidence={candidate.confidence_score:.2f}"
        )
        return True

    def remove(self, message_id: str) -> bool:
        """Remove one candidate. Returns False if it was not queued."""
        return self.remove_many([message_id]) > 0

    def remove_many(self, message_ids: Iterable[str]) -> int:
        """
        Remove several candidates in a single locked cycle.

        Unknown IDs are ignored, so re-running a purge is safe.

        Returns:
            int: Number of candidates removed
        """
        targets = set(message_ids)
        if not targets:
            return 0

        with self._store.transaction() as items:
            original_count = len(items)
            items[:] = [item for item in items if item.get('messageId') not in targets]
            removed = original_count - len(items)

        if removed:
            logger.info(f"Removed {removed} candidate(s)")
        return removed

    def remove_all(self) -> None:
        """Drop every queued candidate."""
        self._store.replace_all([])
        logger.info("Cleared all spam candidates")

    def list(self) -> List[SpamCandidate]:
        return [SpamCandidate.from_dict(item) for item in self._store.load()]

    def count(self) -> int:
        return len(self._store.load())

    def group_by_domain(self) -> Dict[str, List[SpamCandidate]]:
        """
        Group candidates by upper-cased sender domain.

        Returns:
            Dict mapping domain -> candidates, preserving queue order within a domain
        """
        grouped: Dict[str, List[SpamCandidate]] = {}
        for candidate in self.list():
            grouped.setdefault(candidate.sender_domain.upper(), []).append(candidate)
        return grouped
