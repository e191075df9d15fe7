"""
Plan IR, symbol resolution, preflight and transactional execution.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "parse_plan": "taskplan.planning.plan",
    "validate_plan": "taskplan.planning.plan",
    "resolve_skeleton": "taskplan.planning.resolver",
    "run_preflight": "taskplan.planning.preflight",
    "execute_transaction": "taskplan.planning.executor",
    "continue_after_confirm": "taskplan.planning.executor",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning entry points so the policy gate can import the IR first."""
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
