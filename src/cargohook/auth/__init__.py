"""Authentication module."""

from cargohook.auth.dependencies import Operator, OperatorContext, get_operator_context

__all__ = [
    "Operator",
    "OperatorContext",
    "get_operator_context",
]
