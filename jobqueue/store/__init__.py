"""
Job store module.
Contains the store contract and the in-process implementation.
"""

from jobqueue.store.base import Guard, JobStore, Mutator, apply_transition, store_retrying
from jobqueue.store.memory import MemoryJobStore

__all__ = [
    "JobStore",
    "MemoryJobStore",
    "Mutator",
    "Guard",
    "apply_transition",
    "store_retrying",
]
