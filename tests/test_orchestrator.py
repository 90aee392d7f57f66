"""
Tests for the spam triage orchestrator (batch scan, approval, cleanup).
"""

import json
import threading
import pytest
from unittest.mock import MagicMock, patch
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from domain.models import MessageSummary, SpamCandidate
from domain.orchestrator import ScanState, SpamTriageOrchestrator
from integrations.mailbox import Mailbox, MailboxError
from services.config import SpamFilterSettings
from services.json_store import StoreError


class FakeMailbox(Mailbox):
    """In-memory mailbox with an inbox and a junk folder."""

    def __init__(self, messages=None, fail_moves=()):
        self.folders = {'INBOX': list(messages or []), 'Junk': []}
        self.fail_moves = set(fail_moves)
        self.moves = []
        self.deleted = []
        self.list_calls = []

    def list_unseen(self, max_results):
        self.list_calls.append(max_results)
        return list(self.folders['INBOX'])[:max_results]

    def read(self, message_id):
        raise NotImplementedError

    def move_to_folder(self, message_id, folder):
        if message_id in self.fail_moves:
            raise MailboxError(f"cannot move {message_id}")
        self.moves.append((message_id, folder))
        for message in list(self.folders['INBOX']):
            if message.message_id == message_id:
                self.folders['INBOX'].remove(message)
                self.folders.setdefault(folder, []).append(message)

    def delete(self, message_id, folder=None):
        self.deleted.append((message_id, folder))
        folder_messages = self.folders.get(folder or 'INBOX', [])
        self.folders[folder or 'INBOX'] = [m for m in folder_messages if m.message_id != message_id]

    def send(self, to, subject, body):
        pass

    def search(self, query, max_results, folder=None):
        return [
            m for m in self.folders.get(folder or 'INBOX', [])
            if query.lower() in m.sender_email.lower()
        ][:max_results]


class FakeClassifier:
    """Returns a scripted VERDICT line per message ID."""

    def __init__(self, verdicts, failures=()):
        self.verdicts = verdicts
        self.failures = set(failures)
        self.calls = []

    def classify_batch(self, messages, known_domains, pending_domains):
        self.calls.append((list(messages), list(known_domains), list(pending_domains)))
        lines = []
        for message in messages:
            if message.message_id in self.failures:
                raise RuntimeError("classifier timed out")
            verdict = self.verdicts.get(message.message_id)
            if verdict is not None:
                lines.append('VERDICT: ' + json.dumps(dict(verdict, id=message.message_id)))
        lines.append(f'BATCH_STATS: processed={len(lines)}')
        return '\n'.join(lines)


def msg(message_id, sender, subject='Hello'):
    return MessageSummary(message_id=message_id, sender_email=sender, subject=subject)


@pytest.fixture
def settings():
    return SpamFilterSettings(batch_size=10, delay_between_batches_seconds=0, max_consecutive_failures=2)


def make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings):
    return SpamTriageOrchestrator(
        mailbox=mailbox,
        classifier=classifier,
        registry=registry,
        candidates=candidate_queue,
        review_queue=review_queue,
        settings=settings,
    )


class TestRouting:
    """Test routing of each verdict type."""

    def test_all_four_outcomes(self, registry, candidate_queue, review_queue, settings):
        """Test one batch containing every verdict."""
        registry.add('spam.com')
        mailbox = FakeMailbox([
            msg('1', 'a@spam.com'),
            msg('2', 'friend@ok.org'),
            msg('3', 'promo@maybe.net', 'Deal'),
            msg('4', 'x@phish.io', 'Verify account'),
        ])
        classifier = FakeClassifier({
            '1': {'verdict': 'KnownSpam', 'domain': 'spam.com'},
            '2': {'verdict': 'Legitimate'},
            '3': {'verdict': 'Candidate', 'domain': 'maybe.net', 'confidence': 1.5, 'reason': 'promo'},
            '4': {'verdict': 'FlagDomain', 'domain': 'phish.io', 'reason': 'phishing'},
        })
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        result = orchestrator.run_batch()

        stats = result.stats
        assert (stats.processed, stats.junked, stats.legitimate, stats.candidates, stats.flagged) == (4, 1, 1, 1, 1)
        assert result.errors == 0
        assert mailbox.moves == [('1', 'Junk')]

        candidate = candidate_queue.list()[0]
        assert candidate.message_id == '3'
        assert candidate.sender_domain == 'MAYBE.NET'
        assert candidate.confidence_score == 1.0

        pending = review_queue.list()[0]
        assert pending.domain == 'PHISH.IO'
        assert pending.samples[0].subject == 'Verify account'

        assert [e.verdict for e in result.evaluations] == ['KnownSpam', 'Legitimate', 'Candidate', 'FlagDomain']
        assert result.reported.processed == 4

    def test_classifier_receives_snapshots(self, registry, candidate_queue, review_queue, settings):
        """Test that each call gets the message plus registry and pending names."""
        registry.add('spam.com')
        review_queue.add_or_update('phish.io', 'old', 's', 'subj', None)
        mailbox = FakeMailbox([msg('1', 'a@ok.org')])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}})

        make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        messages, known, pending = classifier.calls[0]
        assert [m.message_id for m in messages] == ['1']
        assert known == ['SPAM.COM']
        assert pending == ['PHISH.IO']

    def test_blocked_sender_overrides_verdict(self, registry, candidate_queue, review_queue, settings):
        """Test that a message from a blocked domain is junked whatever the verdict."""
        registry.add('spam.com')
        mailbox = FakeMailbox([msg('1', 'a@SPAM.com')])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        result = orchestrator.run_batch()

        assert result.stats.skipped_known == 1
        assert result.stats.junked == 1
        assert result.stats.legitimate == 0
        assert mailbox.moves == [('1', 'Junk')]

    def test_flag_on_pending_domain_counts_skipped(self, registry, candidate_queue, review_queue, settings):
        """Test that re-flagging a pending domain updates it and counts skipped_pending."""
        review_queue.add_or_update('phish.io', 'old', 's', 'subj', None)
        mailbox = FakeMailbox([msg('1', 'x@phish.io')])
        classifier = FakeClassifier({'1': {'verdict': 'FlagDomain', 'domain': 'phish.io'}})

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert result.stats.skipped_pending == 1
        assert result.stats.flagged == 0
        assert review_queue.list()[0].email_count == 2

    def test_junk_move_failure_counted(self, registry, candidate_queue, review_queue, settings):
        """Test that a failed move is an error but the batch continues."""
        mailbox = FakeMailbox([msg('1', 'a@spam.com'), msg('2', 'b@ok.org')], fail_moves={'1'})
        classifier = FakeClassifier({'1': {'verdict': 'KnownSpam'}, '2': {'verdict': 'Legitimate'}})

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert result.errors == 1
        assert result.stats.junked == 0
        assert result.stats.legitimate == 1

    def test_duplicate_candidate_not_counted(self, registry, candidate_queue, review_queue, settings):
        """Test that an already queued candidate is not counted again."""
        candidate_queue.add(SpamCandidate(message_id='1', sender_email='a@maybe.net'))
        mailbox = FakeMailbox([msg('1', 'a@maybe.net')])
        classifier = FakeClassifier({'1': {'verdict': 'Candidate', 'confidence': 0.3}})

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert result.stats.candidates == 0
        assert candidate_queue.count() == 1

    def test_blocked_sender_junked_when_verdict_names_other_domain(
        self, registry, candidate_queue, review_queue, settings
    ):
        """Test that the sender's own domain decides the blocklist check."""
        registry.add('spam.com')
        mailbox = FakeMailbox([msg('1', 'x@spam.com')])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate', 'domain': 'newsletter.spam.com'}})

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert (result.stats.junked, result.stats.legitimate, result.stats.skipped_known) == (1, 0, 1)
        assert mailbox.moves == [('1', 'Junk')]

    def test_candidate_filed_under_sender_domain(self, registry, candidate_queue, review_queue, settings):
        """Test that a candidate keeps the sender's domain and is swept by approving it."""
        mailbox = FakeMailbox([msg('1', 'x@mail.spammer.net')])
        classifier = FakeClassifier({'1': {'verdict': 'Candidate', 'domain': 'spammer.net', 'confidence': 0.6}})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        orchestrator.run_batch()

        assert candidate_queue.list()[0].sender_domain == 'MAIL.SPAMMER.NET'
        summary = orchestrator.approve_domain('mail.spammer.net')
        assert summary.moved_count == 1
        assert candidate_queue.count() == 0

    def test_flag_uses_verdict_domain_as_review_key(self, registry, candidate_queue, review_queue, settings):
        """Test that a flagged domain is queued under the classifier's domain, else the sender's."""
        mailbox = FakeMailbox([msg('1', 'x@mail.phish.io'), msg('2', 'y@scam.biz')])
        classifier = FakeClassifier({
            '1': {'verdict': 'FlagDomain', 'domain': 'phish.io'},
            '2': {'verdict': 'FlagDomain'},
        })

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert result.stats.flagged == 2
        assert sorted(review_queue.names()) == ['PHISH.IO', 'SCAM.BIZ']

    def test_flag_counts_from_queue_result(self, registry, candidate_queue, review_queue, settings):
        """Test that flagged vs skipped_pending comes from the single queue update."""
        mailbox = FakeMailbox([msg('1', 'x@phish.io')])
        classifier = FakeClassifier({'1': {'verdict': 'FlagDomain', 'domain': 'phish.io'}})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        with patch.object(review_queue, 'is_pending') as mock_is_pending:
            result = orchestrator.run_batch()

        mock_is_pending.assert_not_called()
        assert result.stats.flagged == 1

    def test_store_failure_not_counted_processed(self, registry, candidate_queue, review_queue, settings):
        """Test that a failed store write is an error only, and the message is retried."""
        mailbox = FakeMailbox([msg('1', 'a@maybe.net')])
        classifier = FakeClassifier({'1': {'verdict': 'Candidate', 'confidence': 0.4}})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        with patch.object(candidate_queue, 'add', side_effect=StoreError("disk full")):
            first = orchestrator.run_batch()

        assert (first.stats.processed, first.errors) == (0, 1)
        assert '1' not in orchestrator.seen_message_ids

        second = orchestrator.run_batch()
        assert (second.stats.processed, second.stats.candidates) == (1, 1)


class TestFetchAndDedup:
    """Test the FETCHING state and the dedup set."""

    def test_empty_inbox_terminates(self, registry, candidate_queue, review_queue, settings):
        """Test that an empty fetch ends the batch with inbox_was_empty."""
        orchestrator = make_orchestrator(FakeMailbox([]), FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        result = orchestrator.run_batch()

        assert result.inbox_was_empty is True
        assert orchestrator.state == ScanState.TERMINATED

    @pytest.mark.parametrize("reply", ["No emails in inbox", "[]", "Found 0 emails in the inbox"])
    def test_textual_empty_inbox_reply(self, registry, candidate_queue, review_queue, settings, reply):
        """Test empty-inbox phrasing from a text-returning mailbox."""
        mailbox = MagicMock()
        mailbox.list_unseen.return_value = reply
        orchestrator = make_orchestrator(mailbox, FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        assert orchestrator.run_batch().inbox_was_empty is True

    def test_textual_json_reply(self, registry, candidate_queue, review_queue, settings):
        """Test a JSON array reply from a text-returning mailbox."""
        mailbox = MagicMock()
        mailbox.list_unseen.return_value = json.dumps([{'id': '1', 'from': 'a@ok.org', 'subject': 'Hi'}])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}})

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert result.stats.legitimate == 1

    @pytest.mark.parametrize("listing", [
        [{'id': '1', 'from': 'a@ok.org', 'subject': 'Hi', 'categories': []}],
        [{'id': '1', 'from': 'a@ok.org', 'subject': 'No emails from us anymore?'}],
    ])
    def test_json_listing_with_empty_phrases_is_not_empty(
        self, registry, candidate_queue, review_queue, settings, listing
    ):
        """Test that empty-inbox phrases inside a JSON listing do not end the batch."""
        mailbox = MagicMock()
        mailbox.list_unseen.return_value = json.dumps(listing)
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}})

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert result.inbox_was_empty is False
        assert result.stats.processed == 1

    def test_routed_messages_not_reclassified(self, registry, candidate_queue, review_queue, settings):
        """Test that the second batch skips messages already routed."""
        mailbox = FakeMailbox([msg('1', 'a@ok.org'), msg('2', 'b@ok.org')])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}, '2': {'verdict': 'Legitimate'}})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        first = orchestrator.run_batch()
        second = orchestrator.run_batch()

        assert first.stats.processed == 2
        assert second.inbox_was_empty is True
        assert len(classifier.calls) == 2
        assert orchestrator.seen_message_ids == {'1', '2'}
        assert mailbox.list_calls == [10, 12]

    def test_batch_size_cap(self, registry, candidate_queue, review_queue):
        """Test that at most batch_size messages are classified per batch."""
        settings = SpamFilterSettings(batch_size=2, delay_between_batches_seconds=0)
        mailbox = FakeMailbox([msg(str(i), f'x{i}@ok.org') for i in range(5)])
        classifier = FakeClassifier({str(i): {'verdict': 'Legitimate'} for i in range(5)})

        result = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run_batch()

        assert result.stats.processed == 2

    def test_failed_message_retried(self, registry, candidate_queue, review_queue, settings):
        """Test that a classifier failure leaves the message out of the dedup set."""
        mailbox = FakeMailbox([msg('1', 'a@ok.org')])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}}, failures={'1'})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        result = orchestrator.run_batch()

        assert result.errors == 1
        assert result.stats.processed == 0
        assert '1' not in orchestrator.seen_message_ids

    def test_failed_message_deduped_when_configured(self, registry, candidate_queue, review_queue):
        """Test the dedup_failed_messages setting."""
        settings = SpamFilterSettings(dedup_failed_messages=True, delay_between_batches_seconds=0)
        mailbox = FakeMailbox([msg('1', 'a@ok.org')])
        orchestrator = make_orchestrator(
            mailbox, FakeClassifier({}, failures={'1'}), registry, candidate_queue, review_queue, settings
        )

        orchestrator.run_batch()

        assert '1' in orchestrator.seen_message_ids

    def test_missing_verdict_is_error(self, registry, candidate_queue, review_queue, settings):
        """Test that a reply without a verdict for the message counts an error."""
        mailbox = FakeMailbox([msg('1', 'a@ok.org')])

        result = make_orchestrator(mailbox, FakeClassifier({}), registry, candidate_queue, review_queue, settings).run_batch()

        assert result.errors == 1
        assert result.evaluations == []

    def test_fetch_failure_counted(self, registry, candidate_queue, review_queue, settings):
        """Test that a mailbox failure during fetch ends the batch with one error."""
        mailbox = MagicMock()
        mailbox.list_unseen.side_effect = MailboxError("connection reset")

        result = make_orchestrator(mailbox, FakeClassifier({}), registry, candidate_queue, review_queue, settings).run_batch()

        assert result.errors == 1
        assert result.inbox_was_empty is False


class TestRun:
    """Test the repeated batch loop."""

    def test_runs_until_inbox_empty(self, registry, candidate_queue, review_queue):
        """Test totals across batches until the inbox is exhausted."""
        settings = SpamFilterSettings(batch_size=2, delay_between_batches_seconds=0)
        mailbox = FakeMailbox([msg(str(i), f'x{i}@ok.org') for i in range(5)])
        classifier = FakeClassifier({str(i): {'verdict': 'Legitimate'} for i in range(5)})

        run_stats = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run()

        assert run_stats.totals.processed == 5
        assert run_stats.iterations == 4
        assert run_stats.inbox_was_empty is True
        assert run_stats.stop_reason == 'inbox_empty'

    def test_max_batches(self, registry, candidate_queue, review_queue):
        """Test the iteration cap."""
        settings = SpamFilterSettings(batch_size=1, delay_between_batches_seconds=0)
        mailbox = FakeMailbox([msg(str(i), f'x{i}@ok.org') for i in range(5)])
        classifier = FakeClassifier({str(i): {'verdict': 'Legitimate'} for i in range(5)})

        run_stats = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings).run(max_batches=2)

        assert run_stats.iterations == 2
        assert run_stats.totals.processed == 2
        assert run_stats.stop_reason == 'max_batches'

    def test_consecutive_failures_stop_run(self, registry, candidate_queue, review_queue, settings):
        """Test that repeated failing batches end the run."""
        mailbox = MagicMock()
        mailbox.list_unseen.side_effect = MailboxError("down")

        run_stats = make_orchestrator(mailbox, FakeClassifier({}), registry, candidate_queue, review_queue, settings).run()

        assert run_stats.stop_reason == 'too_many_failures'
        assert run_stats.iterations == 2
        assert run_stats.errors == 2


class TestCancellation:
    """Test cancelling a running scan."""

    def test_cancel_mid_batch(self, registry, candidate_queue, review_queue, settings):
        """Test that cancellation stops after the in-flight message."""
        mailbox = FakeMailbox([msg('1', 'a@ok.org'), msg('2', 'b@ok.org'), msg('3', 'c@ok.org')])
        classifier = FakeClassifier({str(i): {'verdict': 'Legitimate'} for i in range(1, 4)})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        original = classifier.classify_batch

        def classify_then_cancel(messages, known, pending):
            reply = original(messages, known, pending)
            orchestrator.cancel()
            return reply

        classifier.classify_batch = classify_then_cancel

        run_stats = orchestrator.run()

        assert run_stats.cancelled is True
        assert run_stats.stop_reason == 'cancelled'
        assert run_stats.totals.processed == 1
        assert orchestrator.seen_message_ids == {'1'}

    def test_cancel_during_delay(self, registry, candidate_queue, review_queue):
        """Test that the inter-batch wait is interrupted by cancellation."""
        settings = SpamFilterSettings(batch_size=1, delay_between_batches_seconds=30)
        mailbox = FakeMailbox([msg('1', 'a@ok.org'), msg('2', 'b@ok.org')])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}, '2': {'verdict': 'Legitimate'}})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)
        orchestrator.cancel_event = MagicMock(wraps=threading.Event())
        orchestrator.cancel_event.wait.return_value = True

        run_stats = orchestrator.run()

        assert run_stats.cancelled is True
        assert run_stats.iterations == 1
        orchestrator.cancel_event.wait.assert_called_once_with(30)

    def test_reset_cancellation(self, registry, candidate_queue, review_queue, settings):
        """Test that a cancelled instance can run again after a reset."""
        mailbox = FakeMailbox([msg('1', 'a@ok.org')])
        classifier = FakeClassifier({'1': {'verdict': 'Legitimate'}})
        orchestrator = make_orchestrator(mailbox, classifier, registry, candidate_queue, review_queue, settings)

        orchestrator.cancel()
        assert orchestrator.run().iterations == 0

        orchestrator.reset_cancellation()
        assert orchestrator.run().totals.processed == 1


class TestApproval:
    """Test approving domains and applying review decisions."""

    def test_approval_sweep_with_move_failure(self, registry, candidate_queue, review_queue, settings):
        """Test that one failed move still blocks the domain and purges both candidates."""
        candidate_queue.add(SpamCandidate(message_id='c1', sender_email='a@d.com'))
        candidate_queue.add(SpamCandidate(message_id='c2', sender_email='b@D.COM'))
        candidate_queue.add(SpamCandidate(message_id='c3', sender_email='c@other.com'))
        mailbox = FakeMailbox(fail_moves={'c2'})
        orchestrator = make_orchestrator(mailbox, FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        summary = orchestrator.approve_domain('d.com')

        assert registry.contains('D.COM') is True
        assert (summary.moved_count, summary.error_count) == (1, 1)
        assert summary.to_dict()['domain'] == 'D.COM'
        assert [c.message_id for c in candidate_queue.list()] == ['c3']

    def test_approval_idempotent(self, registry, candidate_queue, review_queue, settings):
        """Test that re-approving is a no-op registry add."""
        orchestrator = make_orchestrator(FakeMailbox(), FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        assert orchestrator.approve_domain('d.com').added is True
        second = orchestrator.approve_domain('D.COM')

        assert second.added is False
        assert second.moved_count == 0
        assert registry.count() == 1
        assert registry.list()[0].reason == 'Approved by user review'

    def test_apply_review_decisions(self, registry, candidate_queue, review_queue, settings):
        """Test approving and rejecting pending domains together."""
        for domain in ('a.com', 'b.com', 'c.com'):
            review_queue.add_or_update(domain, f'm-{domain}', 's', 'subj', None)
        orchestrator = make_orchestrator(FakeMailbox(), FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        summary = orchestrator.apply_review_decisions(['a.com'], ['B.COM'])

        assert [a.domain for a in summary.approvals] == ['A.COM']
        assert summary.rejected_count == 1
        assert summary.removed_from_review == 2
        assert review_queue.names() == ['C.COM']
        assert registry.names() == ['A.COM']

    def test_apply_review_decisions_validates_first(self, registry, candidate_queue, review_queue, settings):
        """Test that an invalid domain aborts before any change."""
        orchestrator = make_orchestrator(FakeMailbox(), FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        with pytest.raises(ValueError):
            orchestrator.apply_review_decisions(['a.com', ''], [])
        assert registry.count() == 0

    def test_reject_and_block(self, registry, candidate_queue, review_queue, settings):
        """Test rejecting a pending domain and blocking directly."""
        review_queue.add_or_update('x.com', 'm1', 's', 'subj', None)
        orchestrator = make_orchestrator(FakeMailbox(), FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        assert orchestrator.reject_domain('X.com') is True
        assert orchestrator.reject_domain('x.com') is False
        assert orchestrator.block_domain('spam.com', 'manual') is True
        assert orchestrator.block_domain('SPAM.COM') is False
        assert registry.list()[0].reason == 'manual'


class TestCleanup:
    """Test the blocked-domain cleanup sweep."""

    def test_moves_inbox_then_deletes_junk(self, registry, candidate_queue, review_queue, settings):
        """Test that inbox hits go to junk and junk hits are deleted."""
        registry.add('spam.com')
        mailbox = FakeMailbox([msg('1', 'a@spam.com'), msg('2', 'b@ok.org'), msg('3', 'c@notspam.com')])
        mailbox.folders['Junk'].append(msg('9', 'old@mail.spam.com'))
        orchestrator = make_orchestrator(mailbox, FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        stats = orchestrator.cleanup_blocked_domains()

        assert stats.domains_processed == 1
        assert stats.moved_to_junk == 1
        assert stats.deleted == 2
        assert ('1', 'Junk') in mailbox.moves
        assert [m.message_id for m in mailbox.folders['INBOX']] == ['2', '3']
        assert mailbox.folders['Junk'] == []

    def test_failures_counted(self, registry, candidate_queue, review_queue, settings):
        """Test that search and move failures are counted, not raised."""
        registry.add('spam.com')
        registry.add('bad.com')
        mailbox = FakeMailbox([msg('1', 'a@spam.com')], fail_moves={'1'})
        original_search = mailbox.search

        def search(query, max_results, folder=None):
            if query == 'BAD.COM':
                raise MailboxError("search failed")
            return original_search(query, max_results, folder)

        mailbox.search = search
        orchestrator = make_orchestrator(mailbox, FakeClassifier({}), registry, candidate_queue, review_queue, settings)

        stats = orchestrator.cleanup_blocked_domains()

        assert stats.domains_processed == 2
        assert stats.errors == 3
        assert stats.moved_to_junk == 0
