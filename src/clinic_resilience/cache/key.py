"""
Query key generation utilities.

Semantically identical queries must map to the same key regardless of
parameter order, so parameters are canonicalized before hashing.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

ANONYMOUS = "anonymous"


def canonicalize(value: Any) -> Any:
    """Recursively normalize a parameter value for hashing.

    Mappings are sorted by key, tuples become lists, sets become sorted
    lists and dates become ISO strings.

    Args:
        value: Parameter value

    Returns:
        JSON-serializable canonical value
    """
    if isinstance(value, dict):
        return {str(k): canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((canonicalize(v) for v in value), key=lambda v: json.dumps(v, default=str))
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class QueryKey:
    """Identity of a logical query.

    Attributes:
        operation: Operation name (e.g. 'patients.list')
        params: Query parameters
        user_id: Caller identity; queries of different users never share
    """

    operation: str
    params: dict[str, Any] = field(default_factory=dict, hash=False)
    user_id: str | None = None

    def canonical(self) -> str:
        """Canonical JSON form of this key."""
        return json.dumps(
            {
                "op": self.operation,
                "params": canonicalize(self.params),
                "user": self.user_id or ANONYMOUS,
            },
            sort_keys=True,
            ensure_ascii=True,
            default=str,
        )


class CacheKeyGenerator:
    """Generates deterministic keys for queries.

    Example:
        >>> generator = CacheKeyGenerator(prefix="dedup")
        >>> a = generator.generate(QueryKey("patients.list", {"a": 1, "b": 2}))
        >>> b = generator.generate(QueryKey("patients.list", {"b": 2, "a": 1}))
        >>> a == b
        True
    """

    def __init__(self, prefix: str = "query", hash_length: int = 32) -> None:
        """Initialize key generator.

        Args:
            prefix: Key prefix
            hash_length: Number of hex digits of the digest to keep
        """
        self._prefix = prefix
        self._hash_length = hash_length

    def generate(self, query: QueryKey) -> str:
        """Generate a key for a query.

        Args:
            query: Query identity

        Returns:
            ``{prefix}:{operation}:{digest}``
        """
        digest = self._hash_string(query.canonical())[: self._hash_length]
        return f"{self._prefix}:{query.operation}:{digest}"

    def _hash_string(self, content: str) -> str:
        """Hash a string using SHA-256."""
        return hashlib.sha256(content.encode()).hexdigest()
