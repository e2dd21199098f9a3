"""
Automatic grants from external events.
"""

from stagegate.engines.triggers.quest_host import QuestHost
from stagegate.engines.triggers.trigger_engine import (
    CycleReport,
    TriggerEngine,
    TriggerKind,
    TriggerRule,
)

__all__ = [
    "CycleReport",
    "QuestHost",
    "TriggerEngine",
    "TriggerKind",
    "TriggerRule",
]
