"""
Operators module initialization.
"""

# Import registry first
from onnx_graph_simplifier.operators.registry import OPERATOR_REGISTRY

# Import all rule modules to register them
from onnx_graph_simplifier.operators.base import GenericRule, ShapeRule
from onnx_graph_simplifier.operators import elementwise, nn, tensor_ops
