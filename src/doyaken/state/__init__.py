from doyaken.state.checkpoints import CheckpointStore, ResumeCheckpoint
from doyaken.state.store import StateStore

__all__ = ["CheckpointStore", "ResumeCheckpoint", "StateStore"]
