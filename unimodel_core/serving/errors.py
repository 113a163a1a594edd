"""
Error taxonomy for the UniModel serving core.

Every error raised across the admission, batching and execution path derives
from ServingError and carries:
- a stable error code (used as the metrics label)
- an HTTP-style status code for the API boundary
- the correlation id of the originating request, when there is one

Admission-time errors (ModelNotFound, ModelNotReady, ValidationError,
Backpressure) are raised synchronously from submit() and never create a
queue entry. Execution-time errors reach the caller through its handle.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServingError(Exception):
    """Base class for all serving-core errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.correlation_id = correlation_id
        self.model = model
        self.details = details or {}

    def with_correlation(self, correlation_id: str) -> "ServingError":
        """Return a copy of this error bound to another request id."""
        return self.__class__(
            self.message,
            correlation_id=correlation_id,
            model=self.model,
            details=dict(self.details),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "correlation_id": self.correlation_id,
            "model": self.model,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self.message!r}, "
            f"correlation_id={self.correlation_id!r})"
        )


# ============================================================================
# Admission errors
# ============================================================================

class ModelNotFound(ServingError):
    """No model is registered under the requested name or id."""
    code = "MODEL_NOT_FOUND"
    status_code = 404


class ModelNotReady(ServingError):
    """The model exists but is not accepting work (including Degraded)."""
    code = "MODEL_NOT_READY"
    status_code = 503


class DuplicateModel(ServingError):
    code = "DUPLICATE_MODEL"
    status_code = 409


class ValidationError(ServingError):
    code = "VALIDATION_ERROR"
    status_code = 400


class Backpressure(ServingError):
    """The model's queue is at its backlog limit."""
    code = "BACKPRESSURE"
    status_code = 429


# ============================================================================
# Resource errors
# ============================================================================

class ResourceExhausted(ServingError):
    """No device of the requested kind has enough free capacity."""
    code = "RESOURCE_EXHAUSTED"
    status_code = 503


class ResourceUnavailable(ServingError):
    """The device backing a model is not live."""
    code = "RESOURCE_UNAVAILABLE"
    status_code = 503


# ============================================================================
# Execution errors
# ============================================================================

class BatchTimeout(ServingError):
    """The request's deadline elapsed before it could be executed."""
    code = "BATCH_TIMEOUT"
    status_code = 504


class PluginExecutionError(ServingError):
    """Item-scoped failure reported by the backend, or a failed batch."""
    code = "PLUGIN_EXECUTION_ERROR"
    status_code = 500


class PluginCallFailed(ServingError):
    """The backend call itself failed or timed out (whole batch, transient)."""
    code = "PLUGIN_CALL_FAILED"
    status_code = 502


# ============================================================================
# Lifecycle and configuration errors
# ============================================================================

class InvalidStateTransition(ServingError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


class ConfigurationError(ServingError):
    code = "CONFIG_ERROR"
    status_code = 500


ERROR_CODES = tuple(
    cls.code
    for cls in (
        ModelNotFound,
        ModelNotReady,
        DuplicateModel,
        ValidationError,
        Backpressure,
        ResourceExhausted,
        ResourceUnavailable,
        BatchTimeout,
        PluginExecutionError,
        PluginCallFailed,
        InvalidStateTransition,
        ConfigurationError,
    )
)
