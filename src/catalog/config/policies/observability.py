"""Observability and audit policy models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ObservabilityPolicy(BaseModel):
    """Global observability controls for the hierarchy service.

    ``snapshot_checksum_validation`` makes file-backed stores refuse snapshots
    whose recorded checksum does not match their node payload.
    """

    counter_registry_enabled: bool = Field(default=True)
    log_mutations: bool = Field(default=True)
    snapshot_checksum_validation: bool = Field(default=True)
