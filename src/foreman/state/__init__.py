from foreman.state.store import RunStore
from foreman.state.vcs import GitBranchManager

__all__ = ["GitBranchManager", "RunStore"]
