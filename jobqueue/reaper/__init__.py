"""
Reaper module.
Contains the maintenance process for delayed-job promotion and lease recovery.
"""

from jobqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
