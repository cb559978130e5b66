from .analyze import analyze_node
from .error_handler import error_handler_node
from .execution import execute_node
from .response import respond_node
from .types import TurnComponents
from .validation import apply_corrections, validate_node

__all__ = [
    "TurnComponents",
    "analyze_node",
    "apply_corrections",
    "error_handler_node",
    "execute_node",
    "respond_node",
    "validate_node",
]
