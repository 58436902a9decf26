"""
CLI MODULE
==========

Command-line interface for cycleCore.

Usage:
    cycle-core run "<input>" --cycles 3
    cycle-core eternal --interval 20
    cycle-core sessions
    cycle-core show <session_id>
"""

from .main import main, cli_run, cli_sessions, cli_show, cli_eternal

__all__ = [
    'main',
    'cli_run',
    'cli_sessions',
    'cli_show',
    'cli_eternal',
]
