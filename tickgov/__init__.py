"""
tickgov - Governed single-tick execution for autonomous build loops.

This package runs one "tick" of an agent-driven build loop: it asks a
planning agent for a task, dispatches it to a builder, judges the resulting
working-tree change against scope and blast-radius policy, rolls back unsafe
changes, and persists a report for every tick.
"""

__version__ = "0.1.0"
