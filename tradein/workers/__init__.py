"""
Background workers module.

This module provides the periodic backup scheduler.
"""

from tradein.workers.backup_scheduler import SchedulerHandle

__all__ = ["SchedulerHandle"]
