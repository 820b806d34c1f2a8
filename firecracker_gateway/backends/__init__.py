"""
Execution backends for the Firecracker gateway
"""

from typing import Optional

from ..config import Settings
from .base import (
    BackendError,
    CapacityError,
    ExecutionBackend,
    ExecutionResult,
    UnsupportedLanguageError,
)
from .firecracker import FirecrackerBackend


def create_backend(settings: Optional[Settings] = None) -> ExecutionBackend:
    """Build the process-wide execution backend"""
    return FirecrackerBackend(settings or Settings())


__all__ = [
    "BackendError",
    "CapacityError",
    "ExecutionBackend",
    "ExecutionResult",
    "FirecrackerBackend",
    "UnsupportedLanguageError",
    "create_backend",
]
