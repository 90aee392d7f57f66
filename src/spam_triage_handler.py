"""
AWS Lambda handler for the spam triage pipeline.

Thin composition layer: builds the orchestrator from environment settings
(once per container, reused across warm invocations) and dispatches on the
event's ``action``:

    {"action": "scan", "maxBatches": 3}                 (default, EventBridge schedule)
    {"action": "approve", "domains": ["spam.example"]}
    {"action": "review", "approved": [...], "rejected": [...]}
    {"action": "block", "domain": "spam.example", "reason": "..."}
    {"action": "cleanup"}
    {"action": "status"}
"""

import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

from domain.orchestrator import SpamTriageOrchestrator
from integrations.agentcore_invocation import AgentCoreClassifier, create_bedrock_client
from integrations.imap_mailbox import ImapMailbox
from services.candidate_queue import CandidateQueue
from services.config import ImapSettings, SpamFilterSettings
from services.domain_registry import DomainRegistry, normalize_domain
from services.prompts import PromptLoader, create_s3_client
from services.review_queue import ReviewQueue

# Configure logging
logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO').upper())

# Add console handler for local testing (AWS Lambda provides handlers automatically)
if not logger.handlers:
    console_handler = logging.StreamHandler()
    formatter = logging.Formatter('%(levelname)s - %(message)s')
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

ENVIRONMENT = os.environ.get('ENVIRONMENT', 'dev')

# Stop scanning when this much Lambda time is left
SCAN_TIME_GUARD_MS = int(os.environ.get('SCAN_TIME_GUARD_MS', '60000'))

ACTIONS = ('scan', 'approve', 'review', 'block', 'cleanup', 'status')

_orchestrator: Optional[SpamTriageOrchestrator] = None


def build_orchestrator() -> SpamTriageOrchestrator:
    """
    Wire the orchestrator from environment configuration.

    Raises:
        ConfigurationError: If required settings are missing or malformed
    """
    settings = SpamFilterSettings.from_env()

    prompt_loader = PromptLoader.from_env()
    if prompt_loader.bucket:
        prompt_loader.s3_client = create_s3_client()

    classifier = AgentCoreClassifier(
        client=create_bedrock_client(),
        agent_runtime_arn=os.environ.get('AGENT_RUNTIME_ARN'),
        prompt_loader=prompt_loader,
    )
    mailbox = ImapMailbox(ImapSettings.from_env(), inbox_folder=settings.inbox_folder)

    return SpamTriageOrchestrator(
        mailbox=mailbox,
        classifier=classifier,
        registry=DomainRegistry(settings.domains_path),
        candidates=CandidateQueue(settings.candidates_path),
        review_queue=ReviewQueue(settings.review_path),
        settings=settings,
    )


def get_orchestrator() -> SpamTriageOrchestrator:
    """Return the container-wide orchestrator, building it on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json'
        },
        'body': json.dumps(body)
    }


def _parse_event(event: Any) -> Dict[str, Any]:
    """Accept direct invocations and API Gateway events with a JSON body."""
    if not isinstance(event, dict):
        raise ValueError("Event must be a JSON object")
    body = event.get('body')
    if isinstance(body, str) and body.strip():
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            raise ValueError(f"Request body is not valid JSON: {e}")
        if not isinstance(parsed, dict):
            raise ValueError("Request body must be a JSON object")
        return parsed
    return event


def _string_list(payload: Dict[str, Any], key: str, required: bool = False) -> List[str]:
    value = payload.get(key)
    if value is None:
        if required:
            raise ValueError(f"'{key}' is required")
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{key}' must be a list of domain names")
    if required and not value:
        raise ValueError(f"'{key}' must not be empty")
    return value


def _start_time_guard(orchestrator: SpamTriageOrchestrator, context: Any) -> Optional[threading.Timer]:
    get_remaining = getattr(context, 'get_remaining_time_in_millis', None)
    if get_remaining is None:
        return None
    budget_ms = get_remaining() - SCAN_TIME_GUARD_MS
    if budget_ms <= 0:
        logger.warning("Not enough Lambda time left to scan")
        orchestrator.cancel()
        return None
    timer = threading.Timer(budget_ms / 1000.0, orchestrator.cancel)
    timer.daemon = True
    timer.start()
    logger.info(f"Scan time guard armed: cancelling in {budget_ms / 1000.0:.1f}s")
    return timer


def _handle_scan(orchestrator: SpamTriageOrchestrator, payload: Dict[str, Any], context: Any) -> Dict[str, Any]:
    max_batches = payload.get('maxBatches')
    if max_batches is not None and (not isinstance(max_batches, int) or isinstance(max_batches, bool) or max_batches < 1):
        raise ValueError("'maxBatches' must be a positive integer")

    orchestrator.reset_cancellation()
    timer = _start_time_guard(orchestrator, context)
    try:
        run_stats = orchestrator.run(max_batches=max_batches)
    finally:
        if timer is not None:
            timer.cancel()

    logger.info("=" * 70)
    logger.info(f"Spam scan complete: {run_stats.stop_reason}")
    for name, value in run_stats.totals.counters().items():
        logger.info(f"  {name}: {value}")
    logger.info(f"  errors: {run_stats.errors}")
    logger.info("=" * 70)
    return run_stats.to_dict()


def _handle_approve(orchestrator: SpamTriageOrchestrator, payload: Dict[str, Any]) -> Dict[str, Any]:
    domains = _string_list(payload, 'domains', required=True)
    decisions = orchestrator.apply_review_decisions(domains, [])
    return {'approvals': [approval.to_dict() for approval in decisions.approvals]}


def _handle_review(orchestrator: SpamTriageOrchestrator, payload: Dict[str, Any]) -> Dict[str, Any]:
    approved = _string_list(payload, 'approved')
    rejected = _string_list(payload, 'rejected')
    if not approved and not rejected:
        raise ValueError("At least one of 'approved' or 'rejected' is required")
    return orchestrator.apply_review_decisions(approved, rejected).to_dict()


def _handle_block(orchestrator: SpamTriageOrchestrator, payload: Dict[str, Any]) -> Dict[str, Any]:
    domain = payload.get('domain')
    if not isinstance(domain, str) or not domain.strip():
        raise ValueError("'domain' is required")
    reason = payload.get('reason')
    added = orchestrator.block_domain(domain, reason)
    return {'domain': normalize_domain(domain), 'added': added}


def _handle_status(orchestrator: SpamTriageOrchestrator) -> Dict[str, Any]:
    pending = orchestrator.review_queue.list()
    return {
        'blockedDomains': orchestrator.registry.count(),
        'candidates': orchestrator.candidates.count(),
        'pendingReview': len(pending),
        'pendingDomains': [entry.to_dict() for entry in pending],
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Run one spam triage action.

    Args:
        event: Lambda event (see module docstring)
        context: Lambda context (used for the scan time guard)

    Returns:
        Dict with statusCode and JSON body; 400 for invalid events, 500 for failures
    """
    logger.info(f"Environment: {ENVIRONMENT}")

    try:
        payload = _parse_event(event)
        action = str(payload.get('action') or 'scan').lower()
        if action not in ACTIONS:
            raise ValueError(f"Unknown action '{action}'. Expected one of: {', '.join(ACTIONS)}")
    except ValueError as ve:
        logger.error(f"Validation error: {ve}")
        return _response(400, {'error': str(ve)})

    logger.info("=" * 70)
    logger.info(f"Spam Triage - {action}")
    logger.info("=" * 70)

    orchestrator = None
    try:
        orchestrator = get_orchestrator()

        if action == 'scan':
            result = _handle_scan(orchestrator, payload, context)
        elif action == 'approve':
            result = _handle_approve(orchestrator, payload)
        elif action == 'review':
            result = _handle_review(orchestrator, payload)
        elif action == 'block':
            result = _handle_block(orchestrator, payload)
        elif action == 'cleanup':
            result = orchestrator.cleanup_blocked_domains().to_dict()
        else:
            result = _handle_status(orchestrator)

        logger.info(f"Action {action} succeeded")
        return _response(200, {'action': action, 'result': result})

    except ValueError as ve:
        logger.error(f"Validation error: {ve}")
        return _response(400, {'error': str(ve)})

    except Exception as e:
        logger.error(f"Action {action} failed: {e}", exc_info=True)
        return _response(500, {'error': 'Internal server error', 'message': str(e)})

    finally:
        close = getattr(getattr(orchestrator, 'mailbox', None), 'close', None)
        if close is not None:
            close()


def health_check(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Simple health check endpoint for monitoring.
    """
    return _response(200, {
        'status': 'healthy',
        'environment': ENVIRONMENT,
        'agentConfigured': bool(os.environ.get('AGENT_RUNTIME_ARN')),
        'mailboxConfigured': bool(os.environ.get('IMAP_HOST')),
    })
