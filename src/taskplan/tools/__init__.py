"""Snapshot tooling used by the executor."""

from .patch import PatchError, apply_effects, apply_patch_op

__all__ = [
    "PatchError",
    "apply_effects",
    "apply_patch_op",
]
