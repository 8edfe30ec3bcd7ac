"""Operation Context Management.

Context-variable binding of the workflow, project, and acting user
to every log line emitted while an engine operation runs. Contexts
nest: leaving an inner context restores the outer one.
"""

import uuid
from contextvars import ContextVar, Token
from typing import Any, Dict, List, Optional

_operation_id_var: ContextVar[str] = ContextVar("operation_id", default="")
_fields_var: ContextVar[Dict[str, Any]] = ContextVar("log_fields", default={})


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    return uuid.uuid4().hex


def get_operation_id() -> str:
    """Get the current operation ID from context."""
    return _operation_id_var.get()


def get_context_dict() -> Dict[str, Any]:
    """Get all bound fields as a dictionary for log records."""
    ctx: Dict[str, Any] = {}
    op_id = _operation_id_var.get()
    if op_id:
        ctx["operation_id"] = op_id
    ctx.update({k: v for k, v in _fields_var.get().items() if v})
    return ctx


class OperationContext:
    """Context manager binding operation fields to log entries.

    Example:
        with OperationContext("approve", workflow_uid=uid, actor_uid=user):
            logger.info("step approved")  # includes workflow_uid, actor_uid
    """

    def __init__(self, operation: str, operation_id: Optional[str] = None, **fields: Any):
        self.operation = operation
        self.operation_id = operation_id or get_operation_id() or generate_operation_id()
        self.fields = {"operation": operation, **fields}
        self._tokens: List[Token] = []

    def __enter__(self) -> "OperationContext":
        merged = {**_fields_var.get(), **self.fields}
        self._tokens = [
            _operation_id_var.set(self.operation_id),
            _fields_var.set(merged),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens.clear()

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the active context."""
        self.fields.update(kwargs)
        _fields_var.set({**_fields_var.get(), **kwargs})
