"""
Shape-manipulation operator rules for ONNX Graph Simplifier.
"""

import math
import numpy as np
from typing import List, Optional

from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.tensor import numpy_to_onnx_dtype
from onnx_graph_simplifier.core.types import DataType, Shape, is_known_dim, is_static_shape, merge_dims
from onnx_graph_simplifier.operators.base import (
    InputTensors,
    ShapeRule,
    broadcast_shapes,
    const_value,
    get_axes,
    input_shape,
    normalize_axis,
    product,
)
from onnx_graph_simplifier.operators.registry import OPERATOR_REGISTRY


@OPERATOR_REGISTRY.register('Shape')
class ShapeOpRule(ShapeRule):
    """Shape: 1-D int64 of length rank (restricted by start/end)."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        if shape is None:
            return [[None]]
        rank = len(shape)
        start = node.get_attr('start', 0)
        end = node.get_attr('end', rank)
        start = min(max(start + rank if start < 0 else start, 0), rank)
        end = min(max(end + rank if end < 0 else end, 0), rank)
        return [[max(end - start, 0)]]

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        return [DataType.INT64.value]


@OPERATOR_REGISTRY.register('Size')
class SizeRule(ShapeRule):
    """Size: scalar int64."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        return [[]]

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        return [DataType.INT64.value]


@OPERATOR_REGISTRY.register('Reshape')
class ReshapeRule(ShapeRule):
    """Reshape by a literal target shape; 0 copies a dim, -1 is solved when possible."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        target = const_value(input_tensors, 1)
        if target is None:
            target_shape = input_shape(input_tensors, 1)
            if is_static_shape(target_shape) and len(target_shape) == 1:
                return [[None] * target_shape[0]]
            return [None]

        data_shape = input_shape(input_tensors, 0)
        allowzero = node.get_attr('allowzero', 0)
        result: Shape = []
        infer_index = None
        for i, dim in enumerate(int(d) for d in target.reshape(-1)):
            if dim == 0 and not allowzero:
                if data_shape is None or i >= len(data_shape):
                    result.append(None)
                else:
                    result.append(data_shape[i])
            elif dim == -1:
                if infer_index is not None:
                    raise ValueError("Reshape target has more than one -1")
                infer_index = i
                result.append(None)
            else:
                result.append(dim)

        if infer_index is not None:
            total = product(data_shape) if data_shape is not None else None
            rest = product(result[:infer_index] + result[infer_index + 1:])
            if is_known_dim(total) and is_known_dim(rest) and rest != 0:
                if total % rest:
                    raise ValueError(f"Cannot reshape {data_shape} to {list(target)}")
                result[infer_index] = total // rest
        elif data_shape is not None:
            total = product(data_shape)
            new_total = product(result)
            if is_known_dim(total) and is_known_dim(new_total) and total != new_total:
                raise ValueError(f"Cannot reshape {data_shape} to {list(target)}")
        return [result]


@OPERATOR_REGISTRY.register('Flatten')
class FlattenRule(ShapeRule):
    """Flatten to 2-D around ``axis``."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        if shape is None:
            return [[None, None]]
        axis = node.get_attr('axis', 1)
        axis = axis + len(shape) if axis < 0 else axis
        if axis < 0 or axis > len(shape):
            raise ValueError(f"Flatten axis {axis} out of range for rank {len(shape)}")
        return [[product(shape[:axis]), product(shape[axis:])]]


@OPERATOR_REGISTRY.register('Transpose')
class TransposeRule(ShapeRule):
    """Transpose by ``perm`` (reversed axes by default)."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        if shape is None:
            return [None]
        perm = node.get_attr('perm') or list(reversed(range(len(shape))))
        if sorted(perm) != list(range(len(shape))):
            raise ValueError(f"Invalid perm {perm} for rank {len(shape)}")
        return [[shape[p] for p in perm]]


@OPERATOR_REGISTRY.register('Concat')
class ConcatRule(ShapeRule):
    """Concatenate along ``axis``."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shapes = [t.shape if t is not None else None for t in input_tensors]
        known = [s for s in shapes if s is not None]
        if not known:
            return [None]
        rank = len(known[0])
        if any(len(s) != rank for s in known):
            raise ValueError(f"Concat inputs have different ranks: {shapes}")
        axis = normalize_axis(node.get_attr('axis', 0), rank)

        result: Shape = []
        for i in range(rank):
            if i == axis:
                if None not in shapes and all(is_known_dim(s[i]) for s in shapes):
                    result.append(sum(s[i] for s in shapes))
                else:
                    result.append(None)
            else:
                dim = None
                for s in known:
                    dim = merge_dims(dim, s[i])
                result.append(dim)
        return [result]


@OPERATOR_REGISTRY.register('Squeeze')
class SqueezeRule(ShapeRule):
    """Remove the listed axes, or every size-1 axis when none are listed."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        axes = get_axes(node, input_tensors, 1)
        if shape is None or axes is None:
            return [None]
        if not axes:
            if not is_static_shape(shape):
                return [None]
            return [[d for d in shape if d != 1]]
        axes = {normalize_axis(a, len(shape)) for a in axes}
        for a in axes:
            if is_known_dim(shape[a]) and shape[a] != 1:
                raise ValueError(f"Cannot squeeze axis {a} of size {shape[a]}")
        return [[d for i, d in enumerate(shape) if i not in axes]]


@OPERATOR_REGISTRY.register('Unsqueeze')
class UnsqueezeRule(ShapeRule):
    """Insert size-1 axes at the listed output positions."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        axes = get_axes(node, input_tensors, 1)
        if shape is None or not axes:
            return [None]
        out_rank = len(shape) + len(axes)
        axes = sorted(normalize_axis(a, out_rank) for a in axes)
        if len(set(axes)) != len(axes):
            raise ValueError(f"Duplicate Unsqueeze axes {axes}")
        result: Shape = []
        source = iter(shape)
        for i in range(out_rank):
            result.append(1 if i in axes else next(source))
        return [result]


@OPERATOR_REGISTRY.register('Gather')
class GatherRule(ShapeRule):
    """data[:axis] + indices + data[axis+1:]."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        data = input_shape(input_tensors, 0)
        indices = input_shape(input_tensors, 1)
        if data is None or indices is None:
            return [None]
        axis = normalize_axis(node.get_attr('axis', 0), len(data))
        return [data[:axis] + list(indices) + data[axis + 1:]]


@OPERATOR_REGISTRY.register('Slice')
class SliceRule(ShapeRule):
    """Slice with constant starts/ends/axes/steps (inputs, or attributes before opset 10)."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        if shape is None:
            return [None]
        rank = len(shape)

        if 'starts' in node.attributes:
            starts = node.get_attr('starts')
            ends = node.get_attr('ends')
            axes = node.get_attr('axes') or list(range(len(starts)))
            steps = [1] * len(starts)
        else:
            starts = const_value(input_tensors, 1)
            ends = const_value(input_tensors, 2)
            axes = get_axes(node, input_tensors, 3)
            steps = const_value(input_tensors, 4)
            if axes is None:
                return [[None] * rank]
            if starts is None or ends is None or (steps is None and len(node.inputs) > 4 and node.inputs[4]):
                result = list(shape)
                for a in (axes or range(rank)):
                    result[normalize_axis(a, rank)] = None
                return [result]
            starts = [int(v) for v in starts.reshape(-1)]
            ends = [int(v) for v in ends.reshape(-1)]
            axes = axes or list(range(len(starts)))
            steps = [int(v) for v in steps.reshape(-1)] if steps is not None else [1] * len(starts)

        result = list(shape)
        for start, end, axis, step in zip(starts, ends, axes, steps):
            axis = normalize_axis(int(axis), rank)
            if step == 0:
                raise ValueError("Slice step cannot be 0")
            dim = shape[axis]
            if not is_known_dim(dim):
                result[axis] = None
                continue
            result[axis] = len(range(*slice(start, end, step).indices(dim)))
        return [result]


@OPERATOR_REGISTRY.register('Expand')
class ExpandRule(ShapeRule):
    """Broadcast input 0 against a literal shape."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        target = const_value(input_tensors, 1)
        if target is None:
            return [None]
        return [broadcast_shapes(input_shape(input_tensors, 0), [int(d) for d in target.reshape(-1)])]


@OPERATOR_REGISTRY.register('Tile')
class TileRule(ShapeRule):
    """Multiply each dim by a literal repeat count."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        repeats = const_value(input_tensors, 1)
        if shape is None:
            return [None]
        if repeats is None:
            return [[None] * len(shape)]
        repeats = [int(r) for r in repeats.reshape(-1)]
        if len(repeats) != len(shape):
            raise ValueError(f"Tile repeats {repeats} do not match rank {len(shape)}")
        return [[d * r if is_known_dim(d) else None for d, r in zip(shape, repeats)]]


@OPERATOR_REGISTRY.register('ConstantOfShape')
class ConstantOfShapeRule(ShapeRule):
    """Tensor of a literal shape filled with ``value`` (float32 zero by default)."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        target = const_value(input_tensors, 0)
        if target is None:
            target_shape = input_shape(input_tensors, 0)
            if is_static_shape(target_shape) and len(target_shape) == 1:
                return [[None] * target_shape[0]]
            return [None]
        return [[int(d) for d in target.reshape(-1)]]

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        value = node.get_attr('value')
        if isinstance(value, np.ndarray):
            return [numpy_to_onnx_dtype(value.dtype)]
        return [DataType.FLOAT.value]


@OPERATOR_REGISTRY.register('Constant')
class ConstantRule(ShapeRule):
    """Shape and type of the literal attribute."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        value = constant_node_value(node)
        return [list(value.shape) if value is not None else None]

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        value = constant_node_value(node)
        return [numpy_to_onnx_dtype(value.dtype) if value is not None else None]


def constant_node_value(node: Node) -> Optional[np.ndarray]:
    """Literal carried by a Constant node, None for sparse or unknown forms."""
    if isinstance(node.get_attr('value'), np.ndarray):
        return node.get_attr('value')
    if 'value_float' in node.attributes:
        return np.array(node.get_attr('value_float'), dtype=np.float32)
    if 'value_floats' in node.attributes:
        return np.array(node.get_attr('value_floats'), dtype=np.float32)
    if 'value_int' in node.attributes:
        return np.array(node.get_attr('value_int'), dtype=np.int64)
    if 'value_ints' in node.attributes:
        return np.array(node.get_attr('value_ints'), dtype=np.int64)
    if 'value_string' in node.attributes:
        return np.array(node.get_attr('value_string').encode('utf-8'), dtype=object)
    if 'value_strings' in node.attributes:
        return np.array([s.encode('utf-8') for s in node.get_attr('value_strings')], dtype=object)
    return None


@OPERATOR_REGISTRY.register('Range')
class RangeRule(ShapeRule):
    """1-D of length max(ceil((limit - start) / delta), 0)."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        start = const_value(input_tensors, 0)
        limit = const_value(input_tensors, 1)
        delta = const_value(input_tensors, 2)
        if start is None or limit is None or delta is None:
            return [[None]]
        start, limit, delta = (np.asarray(v).reshape(-1)[0] for v in (start, limit, delta))
        if delta == 0:
            raise ValueError("Range delta cannot be 0")
        return [[max(int(math.ceil((limit - start) / delta)), 0)]]


@OPERATOR_REGISTRY.register('Split')
class SplitRule(ShapeRule):
    """Split along ``axis`` by literal sizes or into equal parts."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        num_outputs = len(node.outputs)
        if shape is None:
            return [None] * num_outputs
        axis = normalize_axis(node.get_attr('axis', 0), len(shape))

        sizes = node.get_attr('split')
        if sizes is None and len(node.inputs) > 1 and node.inputs[1]:
            value = const_value(input_tensors, 1)
            if value is None:
                return [shape[:axis] + [None] + shape[axis + 1:] for _ in range(num_outputs)]
            sizes = [int(v) for v in value.reshape(-1)]
        dim = shape[axis]
        if sizes is None:
            if not is_known_dim(dim):
                sizes = [None] * num_outputs
            else:
                chunk = -(-dim // num_outputs)
                sizes = [min(chunk, dim - chunk * i) for i in range(num_outputs)]
        if len(sizes) != num_outputs:
            raise ValueError(f"Split sizes {sizes} do not match {num_outputs} outputs")
        return [shape[:axis] + [size] + shape[axis + 1:] for size in sizes]
