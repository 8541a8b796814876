from .completion import CompletionEngine, CompletionRun, compute_char_budget
from .interactor import Interactor
from .timers import TimerSet
from .tools import Toolbox, ToolExecutor

__all__ = [
    "CompletionEngine",
    "CompletionRun",
    "Interactor",
    "TimerSet",
    "ToolExecutor",
    "Toolbox",
    "compute_char_budget",
]
