"""Snapshot Diffs: JSON merge-patch composition for incremental state snapshots.

Invariants:
    - apply_patch never mutates its inputs; it returns a fresh deep copy
    - apply_patch(base, make_patch(base, target)) == target for payloads without None values
    - A None value in a patch deletes the key (merge-patch semantics), so None cannot be stored
    - canonical_bytes is a stable encoding: equal payloads give identical bytes
    - materialize() applies diffs root to leaf over a chain that ends at a full payload

Design Decisions:
    - Merge-patch over positional JSON-patch: diffs stay readable and are plain JSON objects
    - Lists are replaced wholesale, as in merge-patch
"""

import copy
import json
from collections.abc import Sequence


def apply_patch(base: dict, patch: dict) -> dict:
    """Return base with patch merged in. Pure."""
    result = copy.deepcopy(base)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = apply_patch(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def make_patch(base: dict, target: dict) -> dict:
    """Smallest merge-patch turning base into target. Pure."""
    patch: dict = {}
    for key in sorted(base.keys() - target.keys()):
        patch[key] = None
    for key, value in target.items():
        if key not in base:
            patch[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(base[key], dict):
            nested = make_patch(base[key], value)
            if nested:
                patch[key] = nested
        elif base[key] != value:
            patch[key] = copy.deepcopy(value)
    return patch


def materialize(full_payload: dict, diffs_root_first: Sequence[dict]) -> dict:
    """Apply each diff in order on top of the full payload."""
    state = copy.deepcopy(full_payload)
    for diff in diffs_root_first:
        state = apply_patch(state, diff)
    return state


def canonical_bytes(payload: dict) -> bytes:
    """Stable UTF-8 encoding (sorted keys, no whitespace)."""
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False,
    ).encode("utf-8")
