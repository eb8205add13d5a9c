"""Command-line interface for the catalog hierarchy."""

from .main import app, run

__all__ = ["app", "run"]
