"""
Workflow execution engine.

Schedules declarative workflows onto prioritized work queues, drives their
steps through pluggable processors and tracks execution state durably.
"""

__version__ = "1.0.0"
