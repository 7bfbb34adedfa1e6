"""digiworker: step-by-step execution of digital worker workflows."""

from .capabilities import CapabilityExecutor, Completed, Failed, PausedForReview
from .config import ApprovalPolicy, DigiworkerConfig, load_config
from .contracts import ControlRoomUpdate, ReviewItem, Workflow
from .engine import WorkflowEngine
from .events import EventEmitter
from .persistence import get_repository
from .state import ExecutionState, ExecutionStateStore, StepStatus
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ApprovalPolicy",
    "CapabilityExecutor",
    "Completed",
    "ControlRoomUpdate",
    "DigiworkerConfig",
    "EventEmitter",
    "ExecutionState",
    "ExecutionStateStore",
    "Failed",
    "PausedForReview",
    "ReviewItem",
    "StepStatus",
    "Workflow",
    "WorkflowEngine",
    "get_repository",
    "get_transport",
    "load_config",
]
