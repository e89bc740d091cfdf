"""
Honey: context persistence and recovery for agents that lose their working
context on compaction.
"""

__version__ = "1.0.0"
