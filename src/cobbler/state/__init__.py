from cobbler.state.checkpoints import Checkpoint, CheckpointController, CheckpointValidation
from cobbler.state.store import StateStore
from cobbler.state.tracker import Task, TaskStatus, TaskTracker

__all__ = [
    "Checkpoint",
    "CheckpointController",
    "CheckpointValidation",
    "StateStore",
    "Task",
    "TaskStatus",
    "TaskTracker",
]
