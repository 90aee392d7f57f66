"""
Data models for the spam triage domain.

These type-safe data structures define clear contracts between the stores,
the orchestrator and the external collaborators. Persisted models know how to
convert themselves to and from the camelCase JSON documents on disk.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Union


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO 8601 (UTC assumed for naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse an ISO 8601 timestamp from a persisted document.

    Unknown or malformed values fall back to ``default`` instead of raising,
    so a hand-edited file never stops the pipeline from loading.
    """
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return default
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_domain(email_address: str) -> str:
    """
    Extract the upper-cased domain from an email address.

    Addresses without an ``@`` are returned upper-cased as-is, matching how
    the sender domain was derived for the stored candidates.
    """
    address = (email_address or '').strip()
    at_index = address.rfind('@')
    if 0 <= at_index < len(address) - 1:
        return address[at_index + 1:].upper()
    return address.upper()


def clamp_confidence(score: Any) -> float:
    """Clamp a confidence score into [0, 1]; non-numeric input becomes 0.0."""
    try:
        value = float(score)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return min(1.0, max(0.0, value))


def _str(value: Any, default: str = '') -> str:
    if value is None:
        return default
    return str(value)


@dataclass
class SpamDomain:
    """
    A confirmed spam sender domain.

    Attributes:
        domain: Upper-case domain name (unique key in the registry)
        added_at: When the domain was blocked
        reason: Optional free-text reason
    """
    domain: str
    added_at: datetime = field(default_factory=utc_now)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'addedAt': format_timestamp(self.added_at),
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SpamDomain':
        return cls(
            domain=_str(data.get('domain')).upper(),
            added_at=parse_timestamp(data.get('addedAt'), utc_now()),
            reason=data.get('reason'),
        )


@dataclass
class SpamCandidate:
    """
    A single message suspected to be spam, awaiting a domain-level decision.

    Attributes:
        message_id: Mailbox message identifier (unique within the queue)
        sender_email: Sender address
        sender_domain: Upper-case domain derived from sender_email
        subject: Message subject
        spam_reason: Why the classifier considered it spam
        confidence_score: Classifier confidence, always within [0, 1] once stored
        received_at: When the mailbox received the message
        identified_at: When the classifier flagged it
    """
    message_id: str
    sender_email: str
    subject: str = ''
    spam_reason: str = ''
    confidence_score: float = 0.0
    sender_domain: str = ''
    received_at: datetime = field(default_factory=utc_now)
    identified_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not self.sender_domain:
            self.sender_domain = extract_domain(self.sender_email)
        else:
            self.sender_domain = self.sender_domain.upper()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messageId': self.message_id,
            'senderEmail': self.sender_email,
            'senderDomain': self.sender_domain,
            'subject': self.subject,
            'spamReason': self.spam_reason,
            'confidenceScore': self.confidence_score,
            'receivedAt': format_timestamp(self.received_at),
            'identifiedAt': format_timestamp(self.identified_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SpamCandidate':
        now = utc_now()
        return cls(
            message_id=_str(data.get('messageId')),
            sender_email=_str(data.get('senderEmail')),
            sender_domain=_str(data.get('senderDomain')),
            subject=_str(data.get('subject')),
            spam_reason=_str(data.get('spamReason')),
            confidence_score=clamp_confidence(data.get('confidenceScore', 0.0)),
            received_at=parse_timestamp(data.get('receivedAt'), now),
            identified_at=parse_timestamp(data.get('identifiedAt'), now),
        )


@dataclass
class ReviewSample:
    """One evidence message kept for a domain pending human review."""
    message_id: str
    sender: str
    subject: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messageId': self.message_id,
            'sender': self.sender,
            'subject': self.subject,
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReviewSample':
        return cls(
            message_id=_str(data.get('messageId')),
            sender=_str(data.get('sender')),
            subject=_str(data.get('subject')),
            reason=data.get('reason'),
        )


@dataclass
class PendingReviewDomain:
    """
    A domain flagged for human approval.

    Attributes:
        domain: Upper-case domain name (unique key in the review queue)
        email_count: Number of flagged occurrences, keeps counting past the sample cap
        first_seen: First time the domain was flagged
        last_seen: Most recent time the domain was flagged
        samples: Up to two evidence messages, no repeated message IDs
    """
    domain: str
    email_count: int = 0
    first_seen: datetime = field(default_factory=utc_now)
    last_seen: datetime = field(default_factory=utc_now)
    samples: List[ReviewSample] = field(default_factory=list)

    def has_sample(self, message_id: str) -> bool:
        return any(sample.message_id == message_id for sample in self.samples)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'emailCount': self.email_count,
            'firstSeen': format_timestamp(self.first_seen),
            'lastSeen': format_timestamp(self.last_seen),
            'samples': [sample.to_dict() for sample in self.samples],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingReviewDomain':
        now = utc_now()
        raw_samples = data.get('samples') or []
        samples = [
            ReviewSample.from_dict(item)
            for item in raw_samples
            if isinstance(item, dict)
        ]
        try:
            email_count = int(data.get('emailCount', 0) or 0)
        except (TypeError, ValueError):
            email_count = 0
        return cls(
            domain=_str(data.get('domain')).upper(),
            email_count=max(email_count, len(samples)),
            first_seen=parse_timestamp(data.get('firstSeen'), now),
            last_seen=parse_timestamp(data.get('lastSeen'), now),
            samples=samples,
        )


@dataclass
class MessageSummary:
    """
    Message fields the orchestrator needs from the mail collaborator.

    Attributes:
        message_id: Mailbox message identifier
        sender_email: Sender address
        subject: Subject line
        received_at: When the message arrived (None if the mailbox did not say)
        body_preview: Optional short body text handed to the classifier
    """
    message_id: str
    sender_email: str
    subject: str = ''
    received_at: Optional[datetime] = None
    body_preview: str = ''

    @property
    def sender_domain(self) -> str:
        return extract_domain(self.sender_email)

    def to_dict_for_agent(self) -> Dict[str, Any]:
        """Convert to the dict format embedded in the classifier prompt."""
        result = {
            'id': self.message_id,
            'senderEmail': self.sender_email,
            'senderDomain': self.sender_domain,
            'subject': self.subject,
        }
        if self.received_at:
            result['receivedDateTime'] = format_timestamp(self.received_at)
        if self.body_preview:
            result['bodyPreview'] = self.body_preview
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MessageSummary':
        """Build from a mailbox reply, accepting the common key spellings."""
        message_id = data.get('id') or data.get('messageId') or data.get('message_id')
        sender = (
            data.get('senderEmail') or data.get('sender_email')
            or data.get('sender') or data.get('from') or ''
        )
        received = data.get('receivedDateTime') or data.get('receivedAt') or data.get('received_at')
        return cls(
            message_id=_str(message_id),
            sender_email=_str(sender),
            subject=_str(data.get('subject')),
            received_at=parse_timestamp(received),
            body_preview=_str(data.get('bodyPreview') or data.get('body_preview')),
        )


@dataclass
class MessageDetail:
    """Full message content returned by ``Mailbox.read``."""
    summary: MessageSummary
    text_body: str = ''
    html_body: str = ''

    @property
    def body_for_agent(self) -> str:
        return self.text_body or self.html_body or ''


# ============================================================================
# Classifier verdicts (closed set, routed exhaustively by the orchestrator)
# ============================================================================

@dataclass
class KnownSpam:
    """Sender domain is already blocked."""
    message_id: str
    domain: str = ''
    reason: Optional[str] = None


@dataclass
class Legitimate:
    """No action needed."""
    message_id: str
    domain: str = ''
    reason: Optional[str] = None


@dataclass
class Candidate:
    """Low-confidence spam signal for a single message."""
    message_id: str
    domain: str = ''
    reason: Optional[str] = None
    confidence: float = 0.0


@dataclass
class FlagDomain:
    """Sender domain looks spammy but needs human confirmation."""
    message_id: str
    domain: str = ''
    reason: Optional[str] = None


Verdict = Union[KnownSpam, Legitimate, Candidate, FlagDomain]


@dataclass
class EmailEvaluation:
    """Per-message routing record, kept for logging and handler responses."""
    message_id: str
    sender: str
    subject: str
    verdict: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'messageId': self.message_id,
            'sender': self.sender,
            'subject': self.subject,
            'verdict': self.verdict,
            'reason': self.reason,
        }


# ============================================================================
# Statistics and result types
# ============================================================================

@dataclass
class BatchStats:
    """
    Counters for one batch.

    The same shape is used for what the orchestrator routed and for what the
    classifier reported in its ``BATCH_STATS`` line.
    """
    processed: int = 0
    junked: int = 0
    candidates: int = 0
    flagged: int = 0
    legitimate: int = 0
    skipped_known: int = 0
    skipped_pending: int = 0
    inbox_empty: bool = False

    COUNTERS = (
        'processed', 'junked', 'candidates', 'flagged',
        'legitimate', 'skipped_known', 'skipped_pending',
    )

    def add(self, other: 'BatchStats') -> None:
        """Accumulate another batch's counters into this one."""
        for name in self.COUNTERS:
            setattr(self, name, getattr(self, name) + getattr(other, name))

    def counters(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in self.COUNTERS}

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = self.counters()
        result['inbox_empty'] = self.inbox_empty
        return result


@dataclass
class BatchResult:
    """
    Result of one FETCHING -> CLASSIFYING -> ROUTING cycle.

    Attributes:
        stats: Counters derived from the orchestrator's own routing
        reported: Counters the classifier reported (two-tier parse)
        errors: Failed collaborator operations in this batch
        inbox_was_empty: Fetch found nothing new
        cancelled: Batch stopped early because cancellation was requested
        evaluations: One record per routed message
    """
    stats: BatchStats = field(default_factory=BatchStats)
    reported: BatchStats = field(default_factory=BatchStats)
    errors: int = 0
    inbox_was_empty: bool = False
    cancelled: bool = False
    evaluations: List[EmailEvaluation] = field(default_factory=list)

    @property
    def made_progress(self) -> bool:
        return self.stats.processed > 0


@dataclass
class RunStats:
    """Totals accumulated across repeated batches until termination."""
    iterations: int = 0
    totals: BatchStats = field(default_factory=BatchStats)
    errors: int = 0
    inbox_was_empty: bool = False
    cancelled: bool = False
    stop_reason: str = ''

    def record(self, batch: BatchResult) -> None:
        self.iterations += 1
        self.totals.add(batch.stats)
        self.errors += batch.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iterations': self.iterations,
            'totals': self.totals.counters(),
            'errors': self.errors,
            'inboxWasEmpty': self.inbox_was_empty,
            'cancelled': self.cancelled,
            'stopReason': self.stop_reason,
        }


@dataclass
class ApprovalSummary:
    """Outcome of approving a domain and sweeping its candidates to junk."""
    domain: str
    moved_count: int = 0
    error_count: int = 0
    added: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'movedCount': self.moved_count,
            'errorCount': self.error_count,
            'added': self.added,
        }


@dataclass
class ReviewDecisionSummary:
    """Outcome of applying a batch of human review decisions."""
    approvals: List[ApprovalSummary] = field(default_factory=list)
    rejected_count: int = 0
    removed_from_review: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'approvals': [approval.to_dict() for approval in self.approvals],
            'rejectedCount': self.rejected_count,
            'removedFromReview': self.removed_from_review,
        }


@dataclass
class CleanupStats:
    """Outcome of sweeping blocked domains out of the inbox and junk folder."""
    domains_processed: int = 0
    moved_to_junk: int = 0
    deleted: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domainsProcessed': self.domains_processed,
            'movedToJunk': self.moved_to_junk,
            'deleted': self.deleted,
            'errors': self.errors,
        }
