"""
Parsing of classifier and mailbox replies.

The classifier answers in free text. Three things are extracted from it:

- Batch statistics, via a two-tier strategy: the structured
  ``BATCH_STATS: key=value, ...`` sentinel first, keyword/number patterns
  second, zeros last.
- Empty-inbox detection, a phrase heuristic over the reply. This is
  fragile by nature (a literal ``[]`` anywhere in the text matches) and is
  only applied to replies that are expected to describe the inbox.
- Per-message verdicts, one ``VERDICT: {json}`` line per message.

None of these functions raise on malformed input.
"""

import json
import logging
import re
from typing import Dict, Optional

from .models import BatchStats, Candidate, FlagDomain, KnownSpam, Legitimate, Verdict, clamp_confidence

logger = logging.getLogger(__name__)

EMPTY_INBOX_PHRASES = (
    'NO EMAILS',
    'NO MORE EMAILS',
    'INBOX IS EMPTY',
    'INBOX EMPTY',
    'EMPTY ARRAY',
    '[]',
)

_ZERO_COUNT_RE = re.compile(r'\b0 EMAILS IN\b')

_SENTINEL_RE = re.compile(r'BATCH_STATS\s*:\s*(?P<body>[^\r\n]*)', re.IGNORECASE)
_PAIR_RE = re.compile(r'([A-Za-z_][A-Za-z_ ]*?)\s*=\s*(\d+)')

# Sentinel keys accepted for each counter
_KEY_ALIASES = {
    'processed': 'processed',
    'emails_processed': 'processed',
    'junked': 'junked',
    'moved': 'junked',
    'moved_to_junk': 'junked',
    'candidates': 'candidates',
    'candidate': 'candidates',
    'flagged': 'flagged',
    'legitimate': 'legitimate',
    'clean': 'legitimate',
    'skipped_known': 'skipped_known',
    'skipped_pending': 'skipped_pending',
}

# Free-text fallback; each pattern has the number in group 1 or group 2
_FALLBACK_PATTERNS = {
    'processed': re.compile(r'(\d+)\s*(?:EMAILS?\s*)?PROCESSED|PROCESSED\s*(\d+)'),
    'junked': re.compile(
        r'(\d+)\s*(?:EMAILS?\s*)?(?:MOVED\s*TO\s*JUNK|JUNKED)|(?:MOVED|JUNKED)\s*(\d+)'
    ),
    'candidates': re.compile(r'(\d+)\s*(?:SPAM\s*)?CANDIDATES?|CANDIDATES?\s*(?:RECORDED\s*)?(\d+)'),
    'flagged': re.compile(r'(\d+)\s*(?:DOMAINS?\s*)?FLAGGED|FLAGGED\s*(\d+)'),
}

_VERDICT_RE = re.compile(r'^\s*VERDICT\s*:\s*(\{.*\})\s*$', re.IGNORECASE | re.MULTILINE)

_VERDICT_ALIASES = {
    'knownspam': KnownSpam,
    'known_spam': KnownSpam,
    'known spam': KnownSpam,
    'junked': KnownSpam,
    'spam': KnownSpam,
    'legitimate': Legitimate,
    'legit': Legitimate,
    'clean': Legitimate,
    'candidate': Candidate,
    'flagdomain': FlagDomain,
    'flag_domain': FlagDomain,
    'flag': FlagDomain,
    'flagged': FlagDomain,
    'review': FlagDomain,
}


def detect_empty_inbox(text: Optional[str]) -> bool:
    """
    Check whether a reply says the inbox has nothing to process.

    Example:
        >>> detect_empty_inbox("Found 0 emails in the inbox")
        True
    """
    if not text:
        return False
    upper = text.upper()
    if any(phrase in upper for phrase in EMPTY_INBOX_PHRASES):
        return True
    return bool(_ZERO_COUNT_RE.search(upper))


def _parse_sentinel(text: str) -> Optional[BatchStats]:
    match = _SENTINEL_RE.search(text)
    if not match:
        return None

    stats = BatchStats()
    for raw_key, raw_value in _PAIR_RE.findall(match.group('body')):
        key = re.sub(r'\s+', '_', raw_key.strip().lower())
        counter = _KEY_ALIASES.get(key)
        if counter:
            setattr(stats, counter, int(raw_value))
        else:
            logger.debug(f"Ignoring unknown BATCH_STATS key: {key}")
    return stats


def _extract_count(text: str, pattern) -> int:
    match = pattern.search(text)
    if not match:
        return 0
    number = match.group(1) or match.group(2)
    try:
        return int(number)
    except (TypeError, ValueError):
        return 0


def _parse_fallback(text: str) -> BatchStats:
    upper = text.upper()
    stats = BatchStats()
    for counter, pattern in _FALLBACK_PATTERNS.items():
        setattr(stats, counter, _extract_count(upper, pattern))
    return stats


def parse_batch_stats(text: Optional[str]) -> BatchStats:
    """
    Extract batch counters from a classifier reply.

    Tier 1: the ``BATCH_STATS:`` sentinel (case-insensitive, whitespace
    tolerant, any subset of known keys). Tier 2: numbers next to keywords
    such as "5 emails processed" or "moved 2 to junk". If neither matches,
    every counter is 0.

    Args:
        text: Raw reply text (None and empty strings are accepted)

    Returns:
        BatchStats: Parsed counters, with inbox_empty set by detect_empty_inbox

    Example:
        >>> stats = parse_batch_stats("BATCH_STATS: processed=5, junked=2, candidates=1")
        >>> (stats.processed, stats.junked, stats.candidates)
        (5, 2, 1)
    """
    if not text:
        return BatchStats()

    stats = _parse_sentinel(text)
    if stats is None:
        stats = _parse_fallback(text)

    stats.inbox_empty = detect_empty_inbox(text)
    return stats


def _build_verdict(data: Dict) -> Optional[Verdict]:
    message_id = data.get('id') or data.get('messageId') or data.get('message_id')
    raw_verdict = str(data.get('verdict', '')).strip().lower()
    verdict_type = _VERDICT_ALIASES.get(raw_verdict)
    if not message_id or verdict_type is None:
        return None

    domain = str(data.get('domain') or data.get('senderDomain') or '').upper()
    reason = data.get('reason')

    if verdict_type is Candidate:
        confidence = data.get('confidence', data.get('confidenceScore', 0.0))
        return Candidate(
            message_id=str(message_id),
            domain=domain,
            reason=reason,
            confidence=clamp_confidence(confidence),
        )
    return verdict_type(message_id=str(message_id), domain=domain, reason=reason)


def parse_verdicts(text: Optional[str]) -> Dict[str, Verdict]:
    """
    Extract per-message verdicts from a classifier reply.

    Each verdict is one line ``VERDICT: {"id": ..., "verdict": ..., ...}``.
    Later lines for the same message ID win. Malformed lines are skipped.

    Returns:
        Dict mapping message ID -> verdict
    """
    verdicts: Dict[str, Verdict] = {}
    if not text:
        return verdicts

    for raw in _VERDICT_RE.findall(text):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed verdict line: {raw[:100]}")
            continue
        if not isinstance(data, dict):
            continue

        verdict = _build_verdict(data)
        if verdict is None:
            logger.debug(f"Skipping verdict with unknown id/verdict: {raw[:100]}")
            continue
        verdicts[verdict.message_id] = verdict

    return verdicts


def verdict_name(verdict: Verdict) -> str:
    """Display name for a verdict."""
    if isinstance(verdict, KnownSpam):
        return 'KnownSpam'
    if isinstance(verdict, Legitimate):
        return 'Legitimate'
    if isinstance(verdict, Candidate):
        return 'Candidate'
    if isinstance(verdict, FlagDomain):
        return 'FlagDomain'
    raise TypeError(f"Unknown verdict type: {type(verdict).__name__}")
