"""
Reusable services for the spam triage pipeline.

This package contains the JSON-backed stores (domain registry, candidate
queue, review queue), configuration loading, email parsing and prompt
management.
"""

__all__ = ['candidate_queue', 'config', 'domain_registry', 'email', 'json_store', 'prompts', 'review_queue']
