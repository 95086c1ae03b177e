"""Group appliances by topology and cut the groups into rollout chunks.

Appliances sharing the same enabled functions on the same site form a group;
every controller lands in one group regardless of site.  Chunks are built
round-robin across groups so each chunk mixes functions instead of taking
all of one function at once, and no chunk holds more than
:data:`MAX_INNER_CHUNK_SIZE` appliances.

The scheduler only computes the partition.  Callers must drive one chunk to
completion (success or recorded failure) before starting the next one.
"""

from __future__ import annotations

import zlib
from typing import Dict, List, Mapping, Sequence

from .functions import active_functions
from .models import (
    FUNCTION_CONNECTOR,
    FUNCTION_CONTROLLER,
    FUNCTION_GATEWAY,
    FUNCTION_LOGFORWARDER,
    FUNCTION_LOGSERVER,
    FUNCTION_PORTAL,
    Appliance,
)

DEFAULT_CHUNK_SIZE = 2

# Upper bound on appliances upgraded in parallel within one chunk.
MAX_INNER_CHUNK_SIZE = 4

# (function, token prefix) in hashing order for non-controller appliances.
_GROUP_TOKENS = (
    (FUNCTION_LOGFORWARDER, "log_forwarder-"),
    (FUNCTION_LOGSERVER, "log_server-"),
    (FUNCTION_GATEWAY, "gateway-"),
    (FUNCTION_CONNECTOR, "connector-"),
    (FUNCTION_PORTAL, "portal-"),
)


def hash_code(value: str) -> int:
    """Stable non-negative hash (CRC-32/IEEE) of *value*."""
    return zlib.crc32(value.encode("utf-8"))


def _token(prefix: str, enabled: bool) -> str:
    return f"{prefix}-{str(enabled).lower()}"


def appliance_group_hash(appliance: Appliance) -> int:
    """Group id of *appliance*, derived from its functions and site."""
    if appliance.has_function(FUNCTION_CONTROLLER):
        # Site is ignored: all controllers form one cohort.
        return hash_code(_token("controller-", appliance.function_enabled(FUNCTION_CONTROLLER)))

    parts = [appliance.site]
    for function, prefix in _GROUP_TOKENS:
        if appliance.has_function(function):
            parts.append(_token(prefix, appliance.function_enabled(function)))
    return hash_code("".join(parts))


def split_appliances_by_group(appliances: Sequence[Appliance]) -> Dict[int, List[Appliance]]:
    result: Dict[int, List[Appliance]] = {}
    for appliance in appliances:
        result.setdefault(appliance_group_hash(appliance), []).append(appliance)
    return result


def _by_name(appliances: List[Appliance]) -> List[Appliance]:
    return sorted(appliances, key=lambda a: a.name)


def chunk_appliance_slice(appliances: Sequence[Appliance], size: int) -> List[List[Appliance]]:
    """Cut *appliances* into contiguous slices of at most *size* items."""
    return [list(appliances[i : i + size]) for i in range(0, len(appliances), size)]


def chunk_appliance_group(
    chunk_size: int, groups: Mapping[int, Sequence[Appliance]]
) -> List[List[Appliance]]:
    """Turn the output of :func:`split_appliances_by_group` into ordered chunks.

    Iteration ``i`` takes the last (by name) remaining appliance of every
    group, in ascending group id order, and puts them into bucket
    ``i % chunk_size``.  Buckets are then sorted by name, split when larger
    than :data:`MAX_INNER_CHUNK_SIZE` and dropped when empty.  The result is
    a partition of the input; *groups* is not modified.
    """
    if chunk_size <= 0:
        chunk_size = DEFAULT_CHUNK_SIZE

    remaining = {gid: _by_name(list(members)) for gid, members in groups.items()}
    keys = sorted(remaining)
    total = sum(len(members) for members in remaining.values())

    buckets: List[List[Appliance]] = [[] for _ in range(chunk_size)]
    for i in range(total):
        bucket = buckets[i % chunk_size]
        for gid in keys:
            members = remaining[gid]
            if members:
                bucket.append(members.pop())

    chunks: List[List[Appliance]] = []
    for bucket in buckets:
        bucket = _by_name(bucket)
        if len(bucket) > MAX_INNER_CHUNK_SIZE:
            chunks.extend(chunk_appliance_slice(bucket, MAX_INNER_CHUNK_SIZE))
        elif bucket:
            chunks.append(bucket)
    return chunks


def plan_rollout(appliances: Sequence[Appliance], chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[List[Appliance]]:
    """Group and chunk *appliances* in one step."""
    return chunk_appliance_group(chunk_size, split_appliances_by_group(appliances))


def appliance_group_description(appliances: Sequence[Appliance]) -> str:
    """Comma separated, sorted set of functions enabled across *appliances*."""
    functions = {fn for a in appliances for fn in active_functions(a)}
    return ", ".join(sorted(functions))
