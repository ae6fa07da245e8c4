"""
Neural-network operator shape rules for ONNX Graph Simplifier.

Covers matrix products, convolution, pooling and reductions.
"""

import math
from typing import List, Optional

from onnx_graph_simplifier.core.errors import ShapeUnknown
from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.types import DataType, Dim, Shape, is_known_dim, merge_dims
from onnx_graph_simplifier.operators.base import (
    InputTensors,
    ShapeRule,
    broadcast_shapes,
    get_axes,
    input_shape,
    normalize_axis,
)
from onnx_graph_simplifier.operators.registry import OPERATOR_REGISTRY

REDUCE_OPS = (
    'ReduceMean', 'ReduceSum', 'ReduceMax', 'ReduceMin', 'ReduceProd',
    'ReduceL1', 'ReduceL2', 'ReduceLogSum', 'ReduceLogSumExp', 'ReduceSumSquare',
)

# Opset 18 moved axes from an attribute to the second input for every reduction;
# ReduceSum did so at opset 13
AXES_INPUT_INDEX = 1


def _check_inner(a: Dim, b: Dim, op_type: str):
    if is_known_dim(a) and is_known_dim(b) and a != b:
        raise ValueError(f"{op_type} inner dimensions do not match: {a} vs {b}")


@OPERATOR_REGISTRY.register('MatMul', 'MatMulInteger')
class MatMulRule(ShapeRule):
    """Numpy matmul semantics, including 1-D promotion."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        a = input_shape(input_tensors, 0)
        b = input_shape(input_tensors, 1)
        if a is None or b is None:
            return [None]
        if not a or not b:
            raise ValueError("MatMul does not accept scalars")

        a_vec = len(a) == 1
        b_vec = len(b) == 1
        a = [1] + list(a) if a_vec else list(a)
        b = list(b) + [1] if b_vec else list(b)
        _check_inner(a[-1], b[-2], node.op_type)

        batch = broadcast_shapes(a[:-2], b[:-2])
        result = batch + [a[-2], b[-1]]
        if b_vec:
            result.pop(-1)
        if a_vec:
            result.pop(-2 if not b_vec else -1)
        return [result]

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        if node.op_type == 'MatMulInteger':
            return [DataType.INT32.value]
        return super().dtype_infer(node, input_tensors)


@OPERATOR_REGISTRY.register('Gemm')
class GemmRule(ShapeRule):
    """Y = alpha * A' @ B' + beta * C."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        a = input_shape(input_tensors, 0)
        b = input_shape(input_tensors, 1)
        if a is None or b is None:
            return [None]
        if len(a) != 2 or len(b) != 2:
            raise ValueError(f"Gemm expects 2-D inputs, got {a} and {b}")
        if node.get_attr('transA', 0):
            a = a[::-1]
        if node.get_attr('transB', 0):
            b = b[::-1]
        _check_inner(a[1], b[0], 'Gemm')
        return [[a[0], b[1]]]


def _pool_output_dim(size: Dim, kernel: int, stride: int, dilation: int,
                     pad_begin: int, pad_end: int, auto_pad: str, ceil_mode: int) -> Dim:
    if not is_known_dim(size):
        return None
    if auto_pad in ('SAME_UPPER', 'SAME_LOWER'):
        return int(math.ceil(size / stride))
    effective = (kernel - 1) * dilation + 1
    if auto_pad == 'VALID':
        return int(math.ceil((size - effective + 1) / stride))
    span = size + pad_begin + pad_end - effective
    if span < 0:
        raise ValueError(f"Kernel {kernel} larger than padded input {size + pad_begin + pad_end}")
    if ceil_mode:
        out = int(math.ceil(span / stride)) + 1
        # The last window must start inside the input or left padding
        if (out - 1) * stride >= size + pad_begin:
            out -= 1
        return out
    return span // stride + 1


class WindowRule(ShapeRule):
    """Shared sliding-window shape logic for Conv and pooling."""

    def kernel_shape(self, node: Node, input_tensors: InputTensors) -> Optional[List[int]]:
        return node.get_attr('kernel_shape')

    def channels(self, node: Node, input_tensors: InputTensors, data: Shape) -> Dim:
        return data[1]

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        data = input_shape(input_tensors, 0)
        if data is None:
            return [None] * len(node.outputs)
        if len(data) < 3:
            raise ValueError(f"{node.op_type} expects N, C and spatial dims, got {data}")
        spatial = len(data) - 2
        kernel = self.kernel_shape(node, input_tensors)
        if kernel is None or any(not is_known_dim(k) for k in kernel):
            out = [data[0], self.channels(node, input_tensors, data)] + [None] * spatial
            return [out] * len(node.outputs)
        if len(kernel) != spatial:
            raise ValueError(f"Kernel rank {len(kernel)} does not match input {data}")

        strides = node.get_attr('strides') or [1] * spatial
        dilations = node.get_attr('dilations') or [1] * spatial
        pads = node.get_attr('pads') or [0] * (2 * spatial)
        auto_pad = node.get_attr('auto_pad', 'NOTSET')
        ceil_mode = node.get_attr('ceil_mode', 0)

        out = [data[0], self.channels(node, input_tensors, data)]
        for i in range(spatial):
            out.append(_pool_output_dim(data[2 + i], kernel[i], strides[i], dilations[i],
                                        pads[i], pads[i + spatial], auto_pad, ceil_mode))
        return [out] * len(node.outputs)


@OPERATOR_REGISTRY.register('Conv', 'ConvInteger')
class ConvRule(WindowRule):
    """Convolution; the kernel shape comes from the weight when not given."""

    def kernel_shape(self, node: Node, input_tensors: InputTensors) -> Optional[List[int]]:
        kernel = node.get_attr('kernel_shape')
        if kernel is not None:
            return kernel
        weight = input_shape(input_tensors, 1)
        return weight[2:] if weight is not None else None

    def channels(self, node: Node, input_tensors: InputTensors, data: Shape) -> Dim:
        weight = input_shape(input_tensors, 1)
        if weight is None:
            return None
        group = node.get_attr('group', 1)
        if is_known_dim(data[1]) and is_known_dim(weight[1]) and data[1] != weight[1] * group:
            raise ValueError(f"Conv input channels {data[1]} do not match weight {weight} with group {group}")
        return weight[0]

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        if node.op_type == 'ConvInteger':
            return [DataType.INT32.value]
        return super().dtype_infer(node, input_tensors)


@OPERATOR_REGISTRY.register('MaxPool', 'AveragePool', 'LpPool')
class PoolRule(WindowRule):
    """Pooling keeps N and C; MaxPool's optional indices output is int64."""

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        dtypes = super().dtype_infer(node, input_tensors)
        if len(dtypes) > 1:
            dtypes[1] = DataType.INT64.value
        return dtypes


@OPERATOR_REGISTRY.register('GlobalAveragePool', 'GlobalMaxPool', 'GlobalLpPool')
class GlobalPoolRule(ShapeRule):
    """Every spatial dim collapses to 1."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        data = input_shape(input_tensors, 0)
        if data is None:
            return [None]
        if len(data) < 2:
            raise ValueError(f"{node.op_type} expects N and C dims, got {data}")
        return [data[:2] + [1] * (len(data) - 2)]


@OPERATOR_REGISTRY.register(*REDUCE_OPS)
class ReduceRule(ShapeRule):
    """Reductions over attribute or input axes, honoring keepdims."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        data = input_shape(input_tensors, 0)
        keepdims = node.get_attr('keepdims', 1)
        axes = get_axes(node, input_tensors, AXES_INPUT_INDEX)
        if data is None:
            return [None]
        if axes is None:
            return [[None] * len(data)] if keepdims else [None]
        if not axes:
            if node.get_attr('noop_with_empty_axes', 0):
                return [list(data)]
            axes = list(range(len(data)))
        axes = {normalize_axis(a, len(data)) for a in axes}
        if keepdims:
            return [[1 if i in axes else d for i, d in enumerate(data)]]
        return [[d for i, d in enumerate(data) if i not in axes]]


@OPERATOR_REGISTRY.register('ArgMax', 'ArgMin')
class ArgReduceRule(ShapeRule):
    """Index of the extreme value along ``axis``; int64."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        data = input_shape(input_tensors, 0)
        if data is None:
            return [None]
        axis = normalize_axis(node.get_attr('axis', 0), len(data))
        if node.get_attr('keepdims', 1):
            return [[1 if i == axis else d for i, d in enumerate(data)]]
        return [[d for i, d in enumerate(data) if i != axis]]

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        return [DataType.INT64.value]


@OPERATOR_REGISTRY.register('Einsum')
class EinsumRule(ShapeRule):
    """Explicit-output einsum equations without ellipsis."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        equation = node.get_attr('equation', '').replace(' ', '')
        if '->' not in equation or '...' in equation:
            raise ShapeUnknown(f"Einsum equation '{equation}' has no explicit output or uses ellipsis")
        lhs, rhs = equation.split('->')
        terms = lhs.split(',')
        if len(terms) != len(input_tensors):
            raise ValueError(f"Einsum equation '{equation}' does not match {len(input_tensors)} inputs")

        letters = {}
        for term, tensor in zip(terms, input_tensors):
            shape = tensor.shape if tensor is not None else None
            if shape is None:
                continue
            if len(shape) != len(term):
                raise ValueError(f"Einsum term '{term}' does not match shape {shape}")
            for letter, dim in zip(term, shape):
                current = letters.get(letter)
                if is_known_dim(current) and is_known_dim(dim) and current != dim and 1 not in (current, dim):
                    raise ValueError(f"Einsum label '{letter}' has sizes {current} and {dim}")
                letters[letter] = merge_dims(current, dim) if current != 1 else dim
        return [[letters.get(letter) for letter in rhs]]
