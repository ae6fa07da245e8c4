"""
Shape Engine for ONNX Graph Simplifier.
"""

from typing import Dict, List, Optional

from onnx_graph_simplifier.core.errors import InvalidArgument, ShapeUnknown
from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.core.types import Shape, merge_dims
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.operators import OPERATOR_REGISTRY
from onnx_graph_simplifier.operators.registry import OperatorRegistry
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)


class ShapeEngine:
    """
    Forward shape and element-type propagation.

    Information flows from graph inputs and initializers through each node's
    shape rule. Anything a rule cannot prove stays unknown; a failing rule
    only affects that node's outputs. The engine never sets payloads.
    """

    def __init__(self, registry: Optional[OperatorRegistry] = None):
        """Initialize shape engine."""
        self.registry = registry if registry is not None else OPERATOR_REGISTRY

    def infer(self,
              graph: Graph,
              input_shapes: Optional[Dict[str, Shape]] = None) -> Graph:
        """
        Infer shapes for all tensors in the graph.

        Args:
            graph: Computation graph, updated in place
            input_shapes: Optional shapes overriding the declared graph inputs

        Returns:
            The same graph

        Raises:
            InvalidArgument: If ``input_shapes`` names something that is not a graph input
        """
        if input_shapes:
            for name, shape in input_shapes.items():
                if name not in graph.inputs:
                    raise InvalidArgument(f"'{name}' is not a graph input")
                graph.get_tensor(name).shape = list(shape) if shape is not None else None

        updated = 0
        for node in graph.topological_order():
            updated += self._infer_node(graph, node)

        logger.debug(f"Shape inference updated {updated} tensors in graph '{graph.name}'")
        return graph

    def _node_input_tensors(self, graph: Graph, node: Node) -> List[Optional[Tensor]]:
        """Input views aligned with ``node.inputs``; runtime inputs never expose a payload."""
        tensors: List[Optional[Tensor]] = []
        for name in node.inputs:
            tensor = graph.tensor_map.get(name) if name else None
            if tensor is not None and tensor.is_constant and not graph.is_constant(name):
                tensor = Tensor(name, tensor.dtype, tensor.shape)
            tensors.append(tensor)
        return tensors

    def _infer_node(self, graph: Graph, node: Node) -> int:
        input_tensors = self._node_input_tensors(graph, node)
        rule = self.registry.get_rule(node.op_type, node.domain)

        try:
            shapes = rule.shape_infer(node, input_tensors)
            dtypes = rule.dtype_infer(node, input_tensors)
        except ShapeUnknown as e:
            logger.debug(f"No shape for node {node.name} ({node.op_type}): {e}")
            shapes = []
            dtypes = rule.dtype_infer(node, input_tensors)
        except Exception as e:
            logger.warning(f"Shape inference failed for node {node.name} ({node.op_type}): {e}")
            shapes = dtypes = []

        updated = 0
        for i, name in enumerate(node.outputs):
            if not name:
                continue
            shape = shapes[i] if i < len(shapes) else None
            dtype = dtypes[i] if i < len(dtypes) else None
            if self._merge(graph.get_tensor(name), shape, dtype):
                updated += 1
        return updated

    @staticmethod
    def _merge(tensor: Tensor, shape: Optional[Shape], dtype: Optional[int]) -> bool:
        """Fold new facts into a tensor's recorded info; known facts are never dropped."""
        if tensor.is_constant:
            return False
        old_shape = tensor.shape
        old_dtype = tensor.dtype

        if shape is not None:
            if tensor.shape is None or len(tensor.shape) != len(shape):
                tensor.shape = list(shape)
            else:
                tensor.shape = [merge_dims(new, old) for new, old in zip(shape, tensor.shape)]
        if dtype is not None:
            tensor.dtype = dtype

        return tensor.shape != old_shape or tensor.dtype != old_dtype
