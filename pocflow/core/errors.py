"""Error Hierarchy — typed, categorized exceptions for all orchestrator failure modes.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Input errors (400-level) block the triggering action and never reach the store
    - Transport errors are transient: the next poll tick or event retries
    - to_response() produces REST envelope; to_sse_event() produces SSE envelope
    - No internal details leaked in user-facing messages

Design Decisions:
    - Single hierarchy with PocFlowError base: BFF global handler catches all (ADR: uniform error shape)
    - ErrorContext as dataclass: rich observability without coupling to logging framework
    - `recoverable` on every error: no failure locks the workflow (new conversation always works)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    RESOURCE_NOT_FOUND = "resource_not_found"
    TRANSPORT = "transport"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Rich context for error observability and debugging."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str | None = None
    operation: str | None = None
    user_message: str | None = None
    debug_info: dict[str, Any] | None = None
    status_code: int | None = None


class PocFlowError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status

    @property
    def recoverable(self) -> bool:
        return True

    def to_response(self) -> dict:
        """Convert to standardized REST error response."""
        return {
            "error": {
                "code": self.code,
                "message": self.context.user_message or self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "recoverable": self.recoverable,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "session_id": self.context.session_id,
                    "operation": self.context.operation,
                },
            }
        }

    def to_sse_event(self) -> dict:
        """Convert to SSE error event."""
        return {
            "type": "error",
            "data": {
                "code": self.code,
                "message": self.context.user_message or self.message,
                "severity": self.severity.value,
                "recoverable": self.recoverable,
                "operation": self.context.operation,
            },
        }


# ─── Input Errors (400-level) ───────────────────────────────────

class InputValidationError(PocFlowError):
    """Required user input missing or empty. Shown inline, store untouched."""
    def __init__(self, message: str, field: str, context: ErrorContext | None = None):
        super().__init__(
            message, "VALIDATION_ERROR", ErrorCategory.VALIDATION,
            ErrorSeverity.WARNING, context, 400,
        )
        self.field = field


class ActionNotAllowedError(PocFlowError):
    """Action is not enabled in the current workflow phase."""
    def __init__(
        self, action: str, phase: str, reason: str | None = None,
        context: ErrorContext | None = None,
    ):
        super().__init__(
            reason or f"Action '{action}' is not available in phase '{phase}'",
            "ACTION_NOT_ALLOWED", ErrorCategory.BUSINESS_RULE,
            ErrorSeverity.WARNING, context, 409,
        )
        self.action = action
        self.phase = phase


class ResourceNotFoundError(PocFlowError):
    """Requested resource does not exist on the backend."""
    def __init__(
        self, resource_type: str, resource_id: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "RESOURCE_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.ERROR, context, 404,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


# ─── Workflow Errors ─────────────────────────────────────────────

class StateConflictError(PocFlowError):
    """Malformed or unexpected delta. Dropped and logged, store unaffected."""
    def __init__(self, message: str, delta_type: str, context: ErrorContext | None = None):
        super().__init__(
            message, "STATE_CONFLICT", ErrorCategory.CONFLICT,
            ErrorSeverity.WARNING, context, 409,
        )
        self.delta_type = delta_type


class WorkflowTimeoutError(PocFlowError):
    """Poller exceeded its max duration. UI moves to manual-check state."""
    def __init__(self, waited_ms: int, waiting_for: str, context: ErrorContext | None = None):
        super().__init__(
            f"No completion signal for {waiting_for} after {waited_ms} ms",
            "WORKFLOW_TIMEOUT", ErrorCategory.TIMEOUT,
            ErrorSeverity.WARNING, context, 504,
        )
        self.waited_ms = waited_ms
        self.waiting_for = waiting_for


# ─── Infrastructure Errors (500-level) ──────────────────────────

class TransportError(PocFlowError):
    """Network, timeout or 5xx failure talking to the analysis backend."""
    def __init__(
        self,
        message: str,
        operation: str,
        status_code: int | None = None,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.operation = ctx.operation or operation
        ctx.status_code = status_code
        super().__init__(
            f"Backend {operation} failed: {message}",
            "TRANSPORT_ERROR", ErrorCategory.TRANSPORT,
            ErrorSeverity.ERROR, ctx, 502,
        )
        self.operation = operation
        self.status_code = status_code
