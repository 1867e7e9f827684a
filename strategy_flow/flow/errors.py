from __future__ import annotations


class FlowExecutionError(RuntimeError):
    """Raised when a strategy flow cannot be executed."""


class NodeExecutionError(FlowExecutionError):
    """Raised by a node executor; the message is what ends up in the run error."""


class ConditionEvaluationError(ValueError):
    """Raised for malformed condition configuration or uncomparable operands."""
