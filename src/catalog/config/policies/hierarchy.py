"""Hierarchy mutation policy models."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class HierarchyPolicy(BaseModel):
    """Configuration controlling materialized-path encoding and mutation limits."""

    delimiter: str = Field(
        default="/",
        min_length=1,
        max_length=4,
        description="Reserved separator placed between path segments.",
    )
    lock_timeout_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Maximum wait for a subtree lock; 0 fails immediately on contention.",
    )
    max_name_length: int = Field(default=100, ge=1)
    journal_size: int = Field(
        default=1000,
        ge=1,
        description="Number of mutation records retained for inspection.",
    )
    bulk_batch_limit: int = Field(
        default=5000,
        ge=1,
        description="Maximum number of moves or reorders accepted in a single batch.",
    )

    @field_validator("delimiter")
    @classmethod
    def _validate_delimiter(cls, value: str) -> str:
        if any(ch.isalnum() or ch == "-" or ch.isspace() for ch in value):
            raise ValueError("delimiter must not contain alphanumerics, '-' or whitespace")
        return value
