"""
Base shape rule and shared shape helpers for ONNX Graph Simplifier.
"""

import numpy as np
from typing import List, Optional, Sequence

from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.core.types import Dim, Shape, is_known_dim
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)

InputTensors = List[Optional[Tensor]]


class ShapeRule:
    """
    Shape and element-type rule for an operator.

    ``input_tensors`` is aligned with ``node.inputs``; omitted optional
    inputs are None. Rules return one entry per node output and use None for
    anything they cannot prove. Shape-incompatible inputs raise ValueError.
    """

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        return [None] * len(node.outputs)

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        """By default every output takes the first known input element type."""
        dtype = next((t.dtype for t in input_tensors if t is not None and t.dtype is not None), None)
        return [dtype] * len(node.outputs)


class GenericRule(ShapeRule):
    """Fallback for unregistered operators: every output stays unknown."""

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        return [None] * len(node.outputs)


def input_shape(input_tensors: InputTensors, index: int) -> Optional[Shape]:
    """Shape of the index-th input, None when omitted or unknown."""
    if index >= len(input_tensors) or input_tensors[index] is None:
        return None
    return input_tensors[index].shape


def const_value(input_tensors: InputTensors, index: int) -> Optional[np.ndarray]:
    """Payload of the index-th input when it is a known constant."""
    if index >= len(input_tensors) or input_tensors[index] is None:
        return None
    tensor = input_tensors[index]
    return tensor.numpy if tensor.is_constant else None


def normalize_axis(axis: int, rank: int) -> int:
    """Map a possibly negative axis into [0, rank)."""
    if axis < -rank or axis >= rank:
        raise ValueError(f"Axis {axis} out of range for rank {rank}")
    return axis + rank if axis < 0 else axis


def get_axes(node: Node, input_tensors: InputTensors, index: int) -> Optional[List[int]]:
    """
    Axes from the ``axes`` attribute or, in newer opsets, a constant input.

    Returns:
        The axes, [] when neither form is present, None when the axes input
        exists but is not constant
    """
    axes = node.get_attr('axes')
    if axes is not None:
        return [int(a) for a in axes]
    if index < len(node.inputs) and node.inputs[index]:
        value = const_value(input_tensors, index)
        if value is None:
            return None
        return [int(a) for a in value.reshape(-1)]
    return []


def broadcast_dims(dims: Sequence[Dim]) -> Dim:
    """Broadcast several dims of the same axis."""
    known = [d for d in dims if is_known_dim(d)]
    non_one = sorted(set(d for d in known if d != 1))
    if len(non_one) > 1:
        raise ValueError(f"Cannot broadcast dims {list(dims)}")
    unknown = [d for d in dims if not is_known_dim(d)]
    if non_one:
        return non_one[0]
    if not unknown:
        return 1
    # Unknown dims broadcast against 1 stay themselves; distinct unknowns stay unknown
    symbols = set(unknown)
    if len(symbols) == 1:
        return unknown[0]
    return None


def broadcast_shapes(*shapes: Optional[Shape]) -> Optional[Shape]:
    """Numpy-style multidirectional broadcasting, None if any rank is unknown."""
    if any(shape is None for shape in shapes):
        return None
    rank = max((len(shape) for shape in shapes), default=0)
    result = []
    for axis in range(rank):
        dims = []
        for shape in shapes:
            offset = axis - (rank - len(shape))
            if offset >= 0:
                dims.append(shape[offset])
        result.append(broadcast_dims(dims))
    return result


def product(dims: Sequence[Dim]) -> Dim:
    """Product of dims, None unless all are known."""
    total = 1
    for dim in dims:
        if not is_known_dim(dim):
            return None
        total *= dim
    return total
