"""
Backend API client.
"""

from .backend import (
    AuthenticationError,
    BackendError,
    BackendUnavailableError,
    PipelineBackendClient,
)

__all__ = [
    "AuthenticationError",
    "BackendError",
    "BackendUnavailableError",
    "PipelineBackendClient"
]
