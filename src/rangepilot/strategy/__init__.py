"""
Strategy package: instance models, the five execution stages and the
lifecycle engine that drives them.
"""

from rangepilot.strategy.models import (
    ExitReason,
    RangePercent,
    RetryPolicy,
    StrategyConfig,
    StrategyInstance,
    StrategyStatus,
)
from rangepilot.strategy.collaborators import Collaborators
from rangepilot.strategy.engine import EngineConfig, LifecycleEngine
from rangepilot.strategy.stages import ExecutionStages, StageConfig

__all__ = [
    "ExitReason",
    "RangePercent",
    "RetryPolicy",
    "StrategyConfig",
    "StrategyInstance",
    "StrategyStatus",
    "Collaborators",
    "EngineConfig",
    "LifecycleEngine",
    "ExecutionStages",
    "StageConfig",
]
