# orchestrator/resolver.py
from __future__ import annotations
import json
import math
from typing import Any, Optional, Union

from orchestrator.errors import ValidationError

WORKER_MIN = 1
DEFAULT_MAX_WORKERS = 4
DEFAULT_ITEMS_PER_WORKER = 100


def parse_worker_count(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def resolve_worker_count(
    item_count: int,
    requested_workers: Union[int, str, None] = None,
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    items_per_worker: int = DEFAULT_ITEMS_PER_WORKER,
) -> int:
    """
    Number of parallel workers for a batch of ``item_count`` items.

    An explicit, positive request wins and is clamped to [1, item_count].
    Otherwise one worker per ``items_per_worker`` items, capped at
    ``max_workers``. Never raises: anything unparseable falls back to the
    default.
    """
    items = item_count if isinstance(item_count, int) and item_count > 0 else WORKER_MIN

    requested = parse_worker_count(requested_workers)
    if requested is not None:
        return max(WORKER_MIN, min(requested, items))

    per_worker = items_per_worker if items_per_worker and items_per_worker > 0 else DEFAULT_ITEMS_PER_WORKER
    ceiling = max_workers if max_workers and max_workers > 0 else DEFAULT_MAX_WORKERS
    default = math.ceil(items / per_worker)
    return max(WORKER_MIN, min(default, ceiling, items))


def count_items(payload: Any) -> int:
    if isinstance(payload, list):
        return len(payload)
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        return len(payload["items"])
    return 0


def extract_items(payload: Any) -> list:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        return payload["items"]
    return []


def parse_payload(raw: Union[bytes, str]) -> Any:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ValidationError("Invalid JSON file.") from e
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError("Invalid JSON file.") from e
