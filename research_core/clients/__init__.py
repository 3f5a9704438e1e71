"""Outbound HTTP clients."""

from .resilient_client import CallSpec, ResilientClient

__all__ = ["CallSpec", "ResilientClient"]
