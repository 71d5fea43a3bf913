"""
Persistent Multi-Worker Job Queue

Stores job records, orders them by priority and delay, hands each job to
exactly one worker through a compare-and-set claim, and manages retry/backoff,
lease recovery and terminal-state webhook notifications.
"""

__version__ = "1.0.0"
