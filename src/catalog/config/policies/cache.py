"""Traversal cache policy models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CachePolicy(BaseModel):
    """Controls memoisation of traversal query results."""

    enabled: bool = Field(default=True)
    ttl_seconds: float = Field(default=300.0, gt=0.0)
    max_entries: int = Field(default=10_000, ge=1)
