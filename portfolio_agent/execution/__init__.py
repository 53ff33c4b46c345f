from .aggregator import AggregatorConfig, ExecutionAggregator
from .types import ExecutionResult, ExecutionStatus, ExecutionStep, StepStatus, derive_status

__all__ = [
    "AggregatorConfig",
    "ExecutionAggregator",
    "ExecutionResult",
    "ExecutionStatus",
    "ExecutionStep",
    "StepStatus",
    "derive_status",
]
