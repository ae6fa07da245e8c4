"""
Elementwise operator shape rules for ONNX Graph Simplifier.
"""

from typing import List, Optional

from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.types import DataType, Shape
from onnx_graph_simplifier.operators.base import (
    InputTensors,
    ShapeRule,
    broadcast_shapes,
    input_shape,
)
from onnx_graph_simplifier.operators.registry import OPERATOR_REGISTRY

UNARY_OPS = (
    'Identity', 'Relu', 'Sigmoid', 'Tanh', 'Exp', 'Log', 'Sqrt', 'Neg', 'Abs',
    'Erf', 'Floor', 'Ceil', 'Round', 'Reciprocal', 'Sin', 'Cos', 'Tan', 'Sign',
    'Not', 'LeakyRelu', 'Elu', 'Selu', 'Celu', 'HardSigmoid', 'HardSwish',
    'Softplus', 'Softsign', 'Gelu', 'Mish', 'ThresholdedRelu', 'Clip',
    'Softmax', 'LogSoftmax', 'Hardmax', 'LRN', 'InstanceNormalization',
    'LayerNormalization', 'BatchNormalization', 'CumSum', 'Trilu',
)

BROADCAST_OPS = (
    'Add', 'Sub', 'Mul', 'Div', 'Pow', 'Mod', 'PRelu', 'Max', 'Min', 'Sum',
    'Mean', 'BitShift', 'BitwiseAnd', 'BitwiseOr', 'BitwiseXor',
)

COMPARISON_OPS = (
    'Equal', 'Less', 'Greater', 'LessOrEqual', 'GreaterOrEqual', 'And', 'Or', 'Xor',
)


@OPERATOR_REGISTRY.register(*UNARY_OPS)
class UnaryRule(ShapeRule):
    """Output 0 has the shape of input 0; extra outputs are left unknown."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shapes: List[Optional[Shape]] = [None] * len(node.outputs)
        if shapes:
            shapes[0] = input_shape(input_tensors, 0)
        return shapes

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        dtypes = super().dtype_infer(node, input_tensors)
        # BatchNormalization/LayerNormalization extra outputs may differ in type
        return dtypes[:1] + [None] * (len(dtypes) - 1)


@OPERATOR_REGISTRY.register('IsNaN', 'IsInf')
class PredicateRule(UnaryRule):
    """Elementwise predicates returning bool."""

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        return [DataType.BOOL.value]


@OPERATOR_REGISTRY.register('Dropout')
class DropoutRule(ShapeRule):
    """Dropout forwards its input; the optional mask has the same shape."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shape = input_shape(input_tensors, 0)
        return [shape] * len(node.outputs)

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        dtype = input_tensors[0].dtype if input_tensors and input_tensors[0] is not None else None
        return [dtype, DataType.BOOL.value][:len(node.outputs)]


@OPERATOR_REGISTRY.register('Cast')
class CastRule(UnaryRule):
    """Cast keeps the shape and switches the element type to ``to``."""

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        to_type = node.get_attr('to')
        return [int(to_type) if to_type is not None else None]


@OPERATOR_REGISTRY.register('CastLike')
class CastLikeRule(UnaryRule):
    """CastLike keeps the shape of input 0 and takes the type of input 1."""

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        target = input_tensors[1] if len(input_tensors) > 1 else None
        return [target.dtype if target is not None else None]


@OPERATOR_REGISTRY.register(*BROADCAST_OPS)
class BroadcastRule(ShapeRule):
    """Multidirectional broadcasting over every input."""

    def shape_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[Shape]]:
        shapes = [t.shape if t is not None else None for t in input_tensors]
        if not shapes:
            raise ValueError(f"{node.op_type} expects at least one input")
        return [broadcast_shapes(*shapes)]


@OPERATOR_REGISTRY.register(*COMPARISON_OPS)
class ComparisonRule(BroadcastRule):
    """Broadcasting comparisons and logical ops, producing bool."""

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        return [DataType.BOOL.value]


@OPERATOR_REGISTRY.register('Where')
class WhereRule(BroadcastRule):
    """Where(cond, x, y): broadcast of all three, element type of x."""

    def dtype_infer(self, node: Node, input_tensors: InputTensors) -> List[Optional[int]]:
        for t in input_tensors[1:]:
            if t is not None and t.dtype is not None:
                return [t.dtype]
        return [None]
