"""
Shape rule registry for ONNX Graph Simplifier.
"""

from typing import Callable, Dict, Type

ONNX_DOMAINS = ("", "ai.onnx")


class OperatorRegistry:
    """
    Registry of shape rules keyed by ONNX operator type.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._operators: Dict[str, Type] = {}
        self._instances: Dict[str, object] = {}

    def register(self, *op_types: str) -> Callable:
        """
        Decorator registering a rule class for one or more operators.

        Args:
            op_types: ONNX operator type names

        Returns:
            Decorator function
        """
        def decorator(cls):
            for op_type in op_types:
                self._operators[op_type] = cls
                self._instances.pop(op_type, None)
            return cls
        return decorator

    def get_rule(self, op_type: str, domain: str = ""):
        """
        Rule instance for an operator.

        Operators outside the default ONNX domain, and unregistered ones, get
        the generic rule, which leaves every output unknown.
        """
        from onnx_graph_simplifier.operators.base import GenericRule

        if domain not in ONNX_DOMAINS or op_type not in self._operators:
            return GenericRule()
        if op_type not in self._instances:
            self._instances[op_type] = self._operators[op_type]()
        return self._instances[op_type]

    def contains(self, op_type: str) -> bool:
        """Check if operator is registered."""
        return op_type in self._operators

    def list_operators(self) -> Dict[str, Type]:
        """Dictionary of all registered operators and their rule classes."""
        return self._operators.copy()

    def __len__(self) -> int:
        return len(self._operators)


# Global operator registry
OPERATOR_REGISTRY = OperatorRegistry()
