"""
Spam triage pipeline - core business logic.

One batch runs through FETCHING -> CLASSIFYING -> ROUTING:
1. Fetch unseen messages from the mailbox, skipping ones already routed
2. Classify each message, one at a time, against the current blocklist
   and review queue
3. Route the verdict (junk, candidate queue, review queue or nothing)

``run`` repeats batches until the inbox is exhausted, an iteration cap is
hit, the run is cancelled, or too many batches in a row fail.

Approval entry points reconcile human decisions back into the stores and
the mailbox. Each store write is atomic on its own; a crash between the
registry add and the candidate purge of an approval leaves the domain
blocked with stale candidates, which the next approval of the same domain
purges.
"""

import json
import logging
import threading
from enum import Enum
from typing import Any, Iterable, List, Optional, Set

from .batch_stats import detect_empty_inbox, parse_batch_stats, parse_verdicts, verdict_name
from .models import (
    ApprovalSummary,
    BatchResult,
    Candidate,
    CleanupStats,
    EmailEvaluation,
    FlagDomain,
    KnownSpam,
    Legitimate,
    MessageSummary,
    ReviewDecisionSummary,
    RunStats,
    SpamCandidate,
    Verdict,
    utc_now,
)
from services.config import SpamFilterSettings
from services.domain_registry import normalize_domain

logger = logging.getLogger(__name__)

APPROVAL_REASON = 'Approved by user review'
BLOCK_REASON = 'Blocked by administrator'


class ScanState(Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    CLASSIFYING = 'classifying'
    ROUTING = 'routing'
    TERMINATED = 'terminated'


class SpamTriageOrchestrator:
    """
    Drives the batch scan and the approval flow.

    All collaborators are injected, so several independent pipelines (one
    per mailbox, or one per test) can run in the same process.

    Args:
        mailbox: Mail transport (see integrations.mailbox.Mailbox)
        classifier: Object with ``classify_batch(messages, known_domains, pending_domains) -> str``
        registry: DomainRegistry of confirmed spam domains
        candidates: CandidateQueue of suspicious messages
        review_queue: ReviewQueue of domains awaiting human review
        settings: Scan loop settings
    """

    def __init__(
        self,
        mailbox,
        classifier,
        registry,
        candidates,
        review_queue,
        settings: Optional[SpamFilterSettings] = None
    ):
        self.mailbox = mailbox
        self.classifier = classifier
        self.registry = registry
        self.candidates = candidates
        self.review_queue = review_queue
        self.settings = settings or SpamFilterSettings()
        self.cancel_event = threading.Event()
        self.state = ScanState.IDLE
        # Message IDs routed by this instance; lives as long as the process
        self._seen: Set[str] = set()

    # ------------------------------------------------------------------
    # Cancellation and dedup
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request the current batch (and run) to stop after the in-flight message."""
        logger.info("Cancellation requested")
        self.cancel_event.set()

    def reset_cancellation(self) -> None:
        """Clear a previous cancellation so a reused instance can run again."""
        self.cancel_event.clear()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def seen_message_ids(self) -> frozenset:
        return frozenset(self._seen)

    # ------------------------------------------------------------------
    # Batch scan
    # ------------------------------------------------------------------

    def run(self, max_batches: Optional[int] = None) -> RunStats:
        """
        Run batches until the inbox is exhausted or another stop condition hits.

        Args:
            max_batches: Iteration cap (defaults to settings.max_batches, None = no cap)

        Returns:
            RunStats: Totals across all batches plus the reason the run stopped
        """
        limit = max_batches if max_batches is not None else self.settings.max_batches
        run_stats = RunStats()
        consecutive_failures = 0

        logger.info(f"Starting spam scan: batch_size={self.settings.batch_size}, max_batches={limit}")

        while True:
            if self.cancelled:
                run_stats.cancelled = True
                run_stats.stop_reason = 'cancelled'
                break

            batch = self.run_batch()
            run_stats.record(batch)
            logger.info(
                f"Batch {run_stats.iterations} complete: {batch.stats.counters()}, "
                f"errors={batch.errors}"
            )

            if batch.inbox_was_empty:
                run_stats.inbox_was_empty = True
                run_stats.stop_reason = 'inbox_empty'
                break
            if batch.cancelled:
                run_stats.cancelled = True
                run_stats.stop_reason = 'cancelled'
                break

            if batch.errors and not batch.made_progress:
                consecutive_failures += 1
                if consecutive_failures >= self.settings.max_consecutive_failures:
                    logger.error(f"Stopping after {consecutive_failures} consecutive failed batches")
                    run_stats.stop_reason = 'too_many_failures'
                    break
            else:
                consecutive_failures = 0

            if limit is not None and run_stats.iterations >= limit:
                run_stats.stop_reason = 'max_batches'
                break

            delay = self.settings.delay_between_batches_seconds
            if delay > 0:
                logger.info(f"Waiting {delay}s before next batch")
                if self.cancel_event.wait(delay):
                    run_stats.cancelled = True
                    run_stats.stop_reason = 'cancelled'
                    break

        self.state = ScanState.TERMINATED
        logger.info(
            f"Spam scan finished ({run_stats.stop_reason}): iterations={run_stats.iterations}, "
            f"totals={run_stats.totals.counters()}, errors={run_stats.errors}"
        )
        return run_stats

    def run_batch(self) -> BatchResult:
        """
        Run one FETCHING -> CLASSIFYING -> ROUTING cycle.

        Collaborator failures are counted in ``errors`` and never raised.

        Returns:
            BatchResult: Routed counters, classifier-reported counters and per-message records
        """
        result = BatchResult()

        self.state = ScanState.FETCHING
        try:
            messages = self._fetch()
        except Exception as e:
            logger.error(f"Failed to fetch unseen messages: {e}", exc_info=True)
            result.errors += 1
            self.state = ScanState.TERMINATED
            return result

        if not messages:
            logger.info("Inbox has no new messages to process")
            result.inbox_was_empty = True
            result.stats.inbox_empty = True
            self.state = ScanState.TERMINATED
            return result

        logger.info(f"Fetched {len(messages)} message(s) for classification")

        for message in messages:
            if self.cancelled:
                logger.info("Batch cancelled before all messages were classified")
                result.cancelled = True
                break
            self._process_message(message, result)

        if result.reported.processed and result.reported.processed != result.stats.processed:
            logger.warning(
                f"Classifier reported {result.reported.processed} processed, "
                f"routed {result.stats.processed}"
            )

        self.state = ScanState.TERMINATED if result.cancelled else ScanState.IDLE
        return result

    def _fetch(self) -> List[MessageSummary]:
        batch_size = self.settings.batch_size
        reply = self.mailbox.list_unseen(batch_size + len(self._seen))
        summaries = self._coerce_summaries(reply)

        fresh = [s for s in summaries if s.message_id and s.message_id not in self._seen]
        skipped = len(summaries) - len(fresh)
        if skipped:
            logger.debug(f"Skipped {skipped} message(s) already routed in this process")
        return fresh[:batch_size]

    @staticmethod
    def _coerce_summaries(reply: Any) -> List[MessageSummary]:
        """Accept a list of summaries/dicts or a textual (JSON) mailbox reply."""
        if reply is None:
            return []

        if isinstance(reply, (str, bytes)):
            text = reply.decode('utf-8', errors='replace') if isinstance(reply, bytes) else reply
            try:
                reply = json.loads(text)
            except json.JSONDecodeError:
                if not detect_empty_inbox(text):
                    logger.warning(f"Unrecognized mailbox reply: {text[:200]}")
                return []
            if isinstance(reply, dict):
                reply = reply.get('messages') or reply.get('value') or []
            if not isinstance(reply, list):
                logger.warning(f"Unexpected mailbox reply type: {type(reply).__name__}")
                return []

        summaries = []
        for item in reply:
            if isinstance(item, MessageSummary):
                summaries.append(item)
            elif isinstance(item, dict):
                summaries.append(MessageSummary.from_dict(item))
        return summaries

    def _process_message(self, message: MessageSummary, result: BatchResult) -> None:
        self.state = ScanState.CLASSIFYING
        try:
            known_domains = self.registry.names()
            pending_domains = self.review_queue.names()
            reply = self.classifier.classify_batch([message], known_domains, pending_domains)
        except Exception as e:
            logger.error(f"Classification failed for message {message.message_id}: {e}", exc_info=True)
            self._record_failure(message, result)
            return

        result.reported.add(parse_batch_stats(reply))
        verdict = parse_verdicts(reply).get(message.message_id)
        if verdict is None:
            logger.warning(f"No verdict returned for message {message.message_id}")
            self._record_failure(message, result)
            return

        self.state = ScanState.ROUTING
        try:
            self._route(message, verdict, result)
        except Exception as e:
            logger.error(f"Routing failed for message {message.message_id}: {e}", exc_info=True)
            self._record_failure(message, result)
            return

        self._seen.add(message.message_id)

    def _record_failure(self, message: MessageSummary, result: BatchResult) -> None:
        result.errors += 1
        if self.settings.dedup_failed_messages:
            self._seen.add(message.message_id)

    def _route(self, message: MessageSummary, verdict: Verdict, result: BatchResult) -> None:
        stats = result.stats
        sender_domain = message.sender_domain

        # A blocked sender is junked whatever the classifier said
        if not isinstance(verdict, KnownSpam) and sender_domain and self.registry.contains(sender_domain):
            logger.info(f"Message {message.message_id} from blocked domain {sender_domain}, overriding verdict")
            stats.skipped_known += 1
            verdict = KnownSpam(message_id=message.message_id, domain=sender_domain, reason='Sender domain is blocked')

        if isinstance(verdict, KnownSpam):
            try:
                self.mailbox.move_to_folder(message.message_id, self.settings.junk_folder)
                stats.junked += 1
            except Exception as e:
                logger.warning(f"Failed to move message {message.message_id} to junk: {e}")
                result.errors += 1
        elif isinstance(verdict, Legitimate):
            stats.legitimate += 1
        elif isinstance(verdict, Candidate):
            candidate = SpamCandidate(
                message_id=message.message_id,
                sender_email=message.sender_email,
                sender_domain=sender_domain,
                subject=message.subject,
                spam_reason=verdict.reason or '',
                confidence_score=verdict.confidence,
                received_at=message.received_at or utc_now(),
                identified_at=utc_now(),
            )
            if self.candidates.add(candidate):
                stats.candidates += 1
        elif isinstance(verdict, FlagDomain):
            review_domain = verdict.domain or sender_domain
            if self.review_queue.add_or_update(
                review_domain,
                message.message_id,
                message.sender_email,
                message.subject,
                verdict.reason,
            ):
                stats.flagged += 1
            else:
                stats.skipped_pending += 1
        else:
            raise TypeError(f"Unknown verdict type: {type(verdict).__name__}")

        stats.processed += 1

        result.evaluations.append(EmailEvaluation(
            message_id=message.message_id,
            sender=message.sender_email,
            subject=message.subject,
            verdict=verdict_name(verdict),
            reason=verdict.reason,
        ))

    # ------------------------------------------------------------------
    # Approval and review decisions
    # ------------------------------------------------------------------

    def approve_domain(self, domain: str) -> ApprovalSummary:
        """
        Block a domain and sweep its queued candidates to junk.

        Move failures are counted, not fatal, and never roll back the
        registry add. Every candidate of the domain is removed from the
        queue afterwards, moved or not.

        Args:
            domain: Domain approved as spam (any casing)

        Returns:
            ApprovalSummary: domain, moved_count, error_count

        Raises:
            ValueError: If the domain is empty
        """
        normalized = normalize_domain(domain)
        added = self.registry.add(normalized, APPROVAL_REASON)
        summary = ApprovalSummary(domain=normalized, added=added)

        matching = self.candidates.group_by_domain().get(normalized, [])
        logger.info(f"Approving {normalized}: {len(matching)} queued candidate(s)")

        for candidate in matching:
            try:
                self.mailbox.move_to_folder(candidate.message_id, self.settings.junk_folder)
                summary.moved_count += 1
            except Exception as e:
                logger.warning(f"Failed to move candidate {candidate.message_id} to junk: {e}")
                summary.error_count += 1

        if matching:
            self.candidates.remove_many(c.message_id for c in matching)

        logger.info(
            f"Approved {normalized}: moved={summary.moved_count}, errors={summary.error_count}"
        )
        return summary

    def reject_domain(self, domain: str) -> bool:
        """Mark a pending domain as legitimate. Returns False if it was not pending."""
        return self.review_queue.remove(domain) is not None

    def apply_review_decisions(
        self,
        approved: Iterable[str],
        rejected: Iterable[str]
    ) -> ReviewDecisionSummary:
        """
        Apply a batch of human review decisions.

        Approved domains go through ``approve_domain``; afterwards approved and
        rejected domains leave the review queue in one write.

        Raises:
            ValueError: If any domain is empty (checked before anything changes)
        """
        approved_domains = [normalize_domain(d) for d in approved]
        rejected_domains = [normalize_domain(d) for d in rejected]

        summary = ReviewDecisionSummary(rejected_count=len(rejected_domains))
        for domain in approved_domains:
            summary.approvals.append(self.approve_domain(domain))

        summary.removed_from_review = self.review_queue.remove_many(approved_domains + rejected_domains)
        logger.info(
            f"Review decisions applied: approved={len(approved_domains)}, "
            f"rejected={len(rejected_domains)}, removed={summary.removed_from_review}"
        )
        return summary

    def block_domain(self, domain: str, reason: Optional[str] = None) -> bool:
        """Add a domain to the registry directly. Returns False if already blocked."""
        return self.registry.add(domain, reason or BLOCK_REASON)

    # ------------------------------------------------------------------
    # Cleanup sweep
    # ------------------------------------------------------------------

    def cleanup_blocked_domains(self) -> CleanupStats:
        """
        Sweep mail from blocked domains out of the mailbox.

        For each blocked domain, matching inbox messages are moved to junk,
        then matching junk messages are deleted. Failures are counted and the
        sweep continues; cancellation is checked between domains.
        """
        stats = CleanupStats()
        limit = self.settings.cleanup_search_limit
        inbox = self.settings.inbox_folder
        junk = self.settings.junk_folder

        for domain in self.registry.names():
            if self.cancelled:
                logger.info("Cleanup cancelled")
                break
            stats.domains_processed += 1

            for message in self._search_domain(domain, limit, inbox, stats):
                try:
                    self.mailbox.move_to_folder(message.message_id, junk)
                    stats.moved_to_junk += 1
                except Exception as e:
                    logger.warning(f"Failed to move {message.message_id} from {domain} to junk: {e}")
                    stats.errors += 1

            for message in self._search_domain(domain, limit, junk, stats):
                try:
                    self.mailbox.delete(message.message_id, folder=junk)
                    stats.deleted += 1
                except Exception as e:
                    logger.warning(f"Failed to delete {message.message_id} from {domain}: {e}")
                    stats.errors += 1

        logger.info(f"Cleanup finished: {stats.to_dict()}")
        return stats

    def _search_domain(self, domain: str, limit: int, folder: str, stats: CleanupStats) -> List[MessageSummary]:
        try:
            hits = self.mailbox.search(domain, limit, folder=folder)
        except Exception as e:
            logger.warning(f"Search for {domain} in {folder} failed: {e}")
            stats.errors += 1
            return []
        # FROM search is a substring match; keep exact domain and subdomains only
        return [
            hit for hit in hits
            if hit.sender_domain == domain or hit.sender_domain.endswith('.' + domain)
        ]
