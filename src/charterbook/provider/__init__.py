"""Scheduling providers."""

from .base import ProviderError, SchedulingProvider
from .calcom import CalComProvider

__all__ = [
    "CalComProvider",
    "ProviderError",
    "SchedulingProvider",
]
