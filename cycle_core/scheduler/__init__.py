"""
Eternal scheduler and watchdog.
"""

from .eternal import ETERNAL_PROMPTS, EternalScheduler, build_scheduler, thread_timer

__all__ = ["ETERNAL_PROMPTS", "EternalScheduler", "build_scheduler", "thread_timer"]
