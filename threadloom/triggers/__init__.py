from .coordinator import ExecutionCoordinator, ExecutionMode, ExecutionOptions, ExecutionResult
from .interpolation import interpolate_commands
from .models import EndCondition, IntervalSchedule, Trigger
from .schedule import calculate_next_run, should_execute_now, validate_interval
from .scheduler import SchedulerService
from .store import TriggerStore

__all__ = [
    "EndCondition",
    "ExecutionCoordinator",
    "ExecutionMode",
    "ExecutionOptions",
    "ExecutionResult",
    "IntervalSchedule",
    "SchedulerService",
    "Trigger",
    "TriggerStore",
    "calculate_next_run",
    "interpolate_commands",
    "should_execute_now",
    "validate_interval",
]
