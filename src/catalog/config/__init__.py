"""Configuration utilities for the catalog hierarchy."""

from .policies import (
    CachePolicy,
    HierarchyPolicy,
    ObservabilityPolicy,
    Policies,
    load_policies,
)
from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "Policies",
    "load_policies",
    "HierarchyPolicy",
    "CachePolicy",
    "ObservabilityPolicy",
]
