"""
Pytest configuration and fixtures for all tests.
"""

import os
import sys
import tempfile
import pytest

# Add src to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Set up test environment variables before importing any modules
os.environ.setdefault('AGENT_RUNTIME_ARN', 'arn:aws:bedrock-agentcore:us-west-2:123456789012:runtime/test-agent-ABC123')
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('LOG_LEVEL', 'INFO')
os.environ.setdefault('SPAM_DATA_DIR', os.path.join(tempfile.gettempdir(), 'spam-triage-tests'))


@pytest.fixture
def registry(tmp_path):
    """Empty domain registry backed by a temp file."""
    from services.domain_registry import DomainRegistry
    return DomainRegistry(tmp_path / 'SpamDomains.json')


@pytest.fixture
def candidate_queue(tmp_path):
    """Empty candidate queue backed by a temp file."""
    from services.candidate_queue import CandidateQueue
    return CandidateQueue(tmp_path / 'SpamCandidates.json')


@pytest.fixture
def review_queue(tmp_path):
    """Empty review queue backed by a temp file."""
    from services.review_queue import ReviewQueue
    return ReviewQueue(tmp_path / 'HumanReview.json')
