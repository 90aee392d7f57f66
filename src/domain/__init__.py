"""
Domain layer for the spam triage pipeline.

This layer contains:
- Data models (stores' records, verdicts, batch/run statistics)
- Reply parsing (batch statistics, empty-inbox detection, verdict lines)
- Business logic (batch scan state machine, approval and cleanup flows)
"""
