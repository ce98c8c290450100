from __future__ import annotations

try:
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("provkit")
except PackageNotFoundError:  # pragma: no cover
    # source checkout without an install
    __version__ = "0.0.0"

from .core.config import CoordinatorConfig
from .runtime.coordinator import RunAttempt, RunContext, RunCoordinator, RunOutcome, RunState

__all__ = [
    "CoordinatorConfig",
    "RunAttempt",
    "RunContext",
    "RunCoordinator",
    "RunOutcome",
    "RunState",
    "__version__",
]
