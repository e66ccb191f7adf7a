"""
Level comparison and hierarchy containment.

Pure functions; they never log, raise on well-formed contexts, or touch
shared state.
"""

from typing import Union

from ..context.models import IsolationContext, IsolationLevel, IDENTIFIER_SLOTS


LevelLike = Union[IsolationLevel, IsolationContext, str]


def _as_level(value: LevelLike) -> IsolationLevel:
    if isinstance(value, IsolationContext):
        return value.sharing_level
    return IsolationLevel(value)


def compare(a: LevelLike, b: LevelLike) -> int:
    """Return -1, 0 or 1 as ``a`` has less, equal or more authority than ``b``."""
    rank_a = _as_level(a).rank
    rank_b = _as_level(b).rank
    if rank_a < rank_b:
        return -1
    if rank_a > rank_b:
        return 1
    return 0


def has_required_level(caller: LevelLike, required: LevelLike) -> bool:
    return compare(caller, required) >= 0


def _contains(outer: IsolationContext, inner: IsolationContext) -> bool:
    """Every slot ``outer`` constrains is present and equal on ``inner``."""
    for slot in IDENTIFIER_SLOTS:
        expected = getattr(outer, slot)
        if expected and getattr(inner, slot) != expected:
            return False
    return True


def check_resource_access(caller: IsolationContext, resource: IsolationContext, strict: bool = False) -> bool:
    """Containment check of ``resource`` against ``caller``.

    Platform callers bypass the check. In strict mode every slot must match
    exactly. A shared resource is also visible to callers sitting inside the
    resource's own scope.
    """
    if caller.is_platform_level():
        return True

    if strict:
        return all(getattr(caller, slot) == getattr(resource, slot) for slot in IDENTIFIER_SLOTS)

    if _contains(caller, resource):
        return True

    return resource.is_shared and _contains(resource, caller)
