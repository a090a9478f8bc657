"""Reconciliation engine: provider protocol, registry and plan executor."""

from provctl.engine.engine import Engine
from provctl.engine.provider import CloudProvider
from provctl.engine.registry import ProviderRegistry

__all__ = [
    "CloudProvider",
    "Engine",
    "ProviderRegistry",
]
