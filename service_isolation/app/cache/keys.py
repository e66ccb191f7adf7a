"""
Cache partition keys.

Format: ``<prefix>tenant:<t>:org:<o>:dept:<d>:user:<u>:<namespace>:<suffix>``
with absent segments omitted; a context with no identifiers encodes as
``<prefix>platform:<namespace>:<suffix>``.
"""

from dataclasses import dataclass
from typing import Optional

from isolation_shared.errors import CacheKeyError, InvalidContextError
from ..context.models import CACHE_SEGMENTS, IDENTIFIER_SLOTS, IsolationContext, check_key_segments


PLATFORM_SEGMENT = "platform"


@dataclass(frozen=True)
class ParsedCacheKey:
    context: IsolationContext
    namespace: str
    suffix: str


def generate_cache_key(
    namespace: str,
    suffix: str,
    ctx: Optional[IsolationContext] = None,
    prefix: str = "",
) -> str:
    ctx = ctx or IsolationContext.platform()
    return f"{prefix}{ctx.build_cache_key(namespace, suffix)}"


def generate_cache_pattern(
    namespace: str,
    pattern: str = "*",
    ctx: Optional[IsolationContext] = None,
    prefix: str = "",
) -> str:
    """Glob matching every key of one namespace in the context's partition."""
    return generate_cache_key(namespace, pattern, ctx, prefix)


def generate_scope_pattern(ctx: IsolationContext, prefix: str = "") -> str:
    """Glob matching every key in the context's partition and the ones below it."""
    segments = [f"{CACHE_SEGMENTS[slot]}:{value}" for slot, value in ctx.identifiers()]
    if not segments:
        return f"{prefix}*"
    return f"{prefix}{':'.join(segments)}:*"


def parse_cache_key(key: str, prefix: str = "") -> ParsedCacheKey:
    """Reverse ``generate_cache_key``.

    Raises:
        CacheKeyError: if the key does not follow the partition format.
    """
    if not isinstance(key, str) or not key.startswith(prefix):
        raise CacheKeyError("Cache key does not carry the expected prefix", {"key": repr(key)})

    parts = key[len(prefix):].split(":")
    identifiers = {}
    idx = 0

    if parts and parts[0] == PLATFORM_SEGMENT:
        idx = 1
    else:
        for slot in IDENTIFIER_SLOTS:
            # A segment pair must leave room for namespace and suffix.
            if len(parts) - idx >= 4 and parts[idx] == CACHE_SEGMENTS[slot]:
                identifiers[slot] = parts[idx + 1]
                idx += 2

    if len(parts) - idx < 2:
        raise CacheKeyError("Cache key is missing namespace or suffix", {"key": key})

    namespace = parts[idx]
    suffix = ":".join(parts[idx + 1:])
    if not identifiers and idx == 0:
        raise CacheKeyError("Cache key has no partition segment", {"key": key})

    try:
        check_key_segments(namespace, suffix)
        context = IsolationContext.from_identifiers(**identifiers)
    except InvalidContextError as e:
        raise CacheKeyError("Cache key encodes an invalid context", {"key": key, "violation": e.violation})

    return ParsedCacheKey(context=context, namespace=namespace, suffix=suffix)
