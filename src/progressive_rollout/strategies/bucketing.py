"""Deterministic percentage bucketing for targets."""

import hashlib
from collections.abc import Callable, Iterable
from typing import TypeVar

from ..exceptions import RolloutValidationError

BUCKET_COUNT = 100

T = TypeVar("T")


def bucket(key: str) -> int:
    """Map a stable key to a bucket in [0, 100).

    SHA-256 based, so the value is identical across processes, restarts and
    coordinator instances.
    """
    if not key:
        raise RolloutValidationError("Bucketing key must not be empty")

    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % BUCKET_COUNT


def is_included(key: str, percentage: float) -> bool:
    """Whether a key is exposed at the given percentage.

    Inclusion is monotonic: a key included at ``p`` is included at every
    percentage >= ``p``.
    """
    return bucket(key) < percentage


def bucket_order(items: Iterable[T], key: Callable[[T], str] = str) -> list[T]:
    """Order items by the bucket of their key.

    Ties are broken by the key, then by input order, so each percentage
    prefix of the result grows monotonically.
    """
    return sorted(items, key=lambda item: (bucket(key(item)), key(item)))
