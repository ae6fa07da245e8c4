import numpy as np
import pytest
from onnx import TensorProto, helper

from onnx_graph_simplifier.core.errors import InvalidArgument, ShapeUnknown
from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.engines.shape_engine import ShapeEngine
from onnx_graph_simplifier.operators import OPERATOR_REGISTRY
from onnx_graph_simplifier.operators.base import GenericRule
from onnx_models import initializer, make_graph, value_info


def infer(op_type, input_tensors, num_outputs=1, **attrs):
    node = Node(op_type.lower(), op_type,
                [t.name if t is not None else "" for t in input_tensors],
                [f"out{i}" for i in range(num_outputs)], attrs)
    rule = OPERATOR_REGISTRY.get_rule(op_type)
    return rule.shape_infer(node, input_tensors)


def var(name, shape, dtype=TensorProto.FLOAT):
    return Tensor(name, dtype, shape)


def const(name, value):
    return Tensor(name, data=np.asarray(value))


class TestElementwiseRules(object):
    def test_unary_keeps_shape(self):
        assert infer("Relu", [var("x", [2, "N"])]) == [[2, "N"]]

    def test_broadcast(self):
        assert infer("Add", [var("a", [2, 1]), var("b", [3])]) == [[2, 3]]

    def test_broadcast_symbolic_against_one(self):
        assert infer("Mul", [var("a", ["N", 4]), var("b", [1, 4])]) == [["N", 4]]

    def test_broadcast_distinct_unknowns_stay_unknown(self):
        assert infer("Mul", [var("a", ["N"]), var("b", ["M"])]) == [[None]]

    def test_broadcast_incompatible_raises(self):
        with pytest.raises(ValueError):
            infer("Add", [var("a", [2]), var("b", [3])])

    def test_broadcast_unknown_rank(self):
        assert infer("Add", [var("a", None), var("b", [3])]) == [None]

    def test_comparison_is_bool(self):
        node = Node("eq", "Equal", ["a", "b"], ["out"])
        rule = OPERATOR_REGISTRY.get_rule("Equal")
        assert rule.dtype_infer(node, [var("a", [2]), var("b", [2])]) == [TensorProto.BOOL]

    def test_cast_takes_target_type(self):
        node = Node("cast", "Cast", ["x"], ["out"], {"to": TensorProto.INT64})
        rule = OPERATOR_REGISTRY.get_rule("Cast")
        assert rule.dtype_infer(node, [var("x", [2])]) == [TensorProto.INT64]


class TestTensorRules(object):
    def test_shape(self):
        assert infer("Shape", [var("x", [2, 3, 4])]) == [[3]]
        assert infer("Shape", [var("x", [2, 3, 4])], start=1) == [[2]]

    def test_reshape_with_zero_and_minus_one(self):
        assert infer("Reshape", [var("x", [2, 3, 4]), const("s", np.array([0, -1], dtype=np.int64))]) == [[2, 12]]

    def test_reshape_non_constant_target(self):
        assert infer("Reshape", [var("x", [2, 3, 4]), var("s", [2], TensorProto.INT64)]) == [[None, None]]

    def test_reshape_size_mismatch_raises(self):
        with pytest.raises(ValueError):
            infer("Reshape", [var("x", [2, 3]), const("s", np.array([4, 2], dtype=np.int64))])

    def test_flatten(self):
        assert infer("Flatten", [var("x", [2, 3, 4])], axis=2) == [[6, 4]]

    def test_transpose_default_reverses(self):
        assert infer("Transpose", [var("x", [2, 3, 4])]) == [[4, 3, 2]]
        assert infer("Transpose", [var("x", [2, 3, 4])], perm=[0, 2, 1]) == [[2, 4, 3]]

    def test_concat(self):
        assert infer("Concat", [var("a", [2, 3]), var("b", [2, 5])], axis=1) == [[2, 8]]
        assert infer("Concat", [var("a", [2, 3]), var("b", [2, "K"])], axis=-1) == [[2, None]]

    def test_squeeze_with_axes_input(self):
        assert infer("Squeeze", [var("x", [1, 3, 1]), const("axes", np.array([0], dtype=np.int64))]) == [[3, 1]]

    def test_squeeze_without_axes(self):
        assert infer("Squeeze", [var("x", [1, 3, 1])]) == [[3]]

    def test_unsqueeze_with_attribute(self):
        assert infer("Unsqueeze", [var("x", [3])], axes=[0, 2]) == [[1, 3, 1]]

    def test_gather(self):
        assert infer("Gather", [var("x", [5, 4]), var("i", [2, 3], TensorProto.INT64)]) == [[2, 3, 4]]

    def test_slice(self):
        inputs = [
            var("x", [10, 20]),
            const("starts", np.array([1], dtype=np.int64)),
            const("ends", np.array([-1], dtype=np.int64)),
            const("axes", np.array([1], dtype=np.int64)),
            const("steps", np.array([2], dtype=np.int64)),
        ]
        assert infer("Slice", inputs) == [[10, 9]]

    def test_slice_non_constant_bounds(self):
        inputs = [var("x", [10, 20]), var("starts", [1], TensorProto.INT64),
                  const("ends", np.array([5], dtype=np.int64)), const("axes", np.array([0], dtype=np.int64))]
        assert infer("Slice", inputs) == [[None, 20]]

    def test_expand_and_tile(self):
        assert infer("Expand", [var("x", [3, 1]), const("s", np.array([2, 3, 4], dtype=np.int64))]) == [[2, 3, 4]]
        assert infer("Tile", [var("x", [3, 2]), const("r", np.array([2, 1], dtype=np.int64))]) == [[6, 2]]

    def test_constant_of_shape(self):
        assert infer("ConstantOfShape", [const("s", np.array([2, 3], dtype=np.int64))]) == [[2, 3]]

    def test_range(self):
        inputs = [const("start", np.array(0)), const("limit", np.array(10)), const("delta", np.array(3))]
        assert infer("Range", inputs) == [[4]]

    def test_split(self):
        assert infer("Split", [var("x", [6, 4])], num_outputs=3, axis=0) == [[2, 4], [2, 4], [2, 4]]
        assert infer("Split", [var("x", [6, 4]), const("split", np.array([1, 3], dtype=np.int64))],
                     num_outputs=2, axis=1) == [[6, 1], [6, 3]]


class TestNNRules(object):
    def test_matmul(self):
        assert infer("MatMul", [var("a", [2, 3, 4]), var("b", [4, 5])]) == [[2, 3, 5]]
        assert infer("MatMul", [var("a", [4]), var("b", [4, 5])]) == [[5]]
        assert infer("MatMul", [var("a", [3, 4]), var("b", [4])]) == [[3]]

    def test_matmul_mismatch_raises(self):
        with pytest.raises(ValueError):
            infer("MatMul", [var("a", [3, 4]), var("b", [5, 6])])

    def test_gemm_transposed(self):
        assert infer("Gemm", [var("a", [2, 3]), var("b", [4, 3])], transB=1) == [[2, 4]]

    def test_conv(self):
        inputs = [var("x", [1, 3, 32, 32]), var("w", [8, 3, 3, 3])]
        assert infer("Conv", inputs, pads=[1, 1, 1, 1], strides=[2, 2]) == [[1, 8, 16, 16]]

    def test_max_pool_ceil_mode(self):
        x = var("x", [1, 3, 7, 7])
        assert infer("MaxPool", [x], kernel_shape=[2, 2], strides=[2, 2]) == [[1, 3, 3, 3]]
        assert infer("MaxPool", [x], kernel_shape=[2, 2], strides=[2, 2], ceil_mode=1) == [[1, 3, 4, 4]]

    def test_global_pool(self):
        assert infer("GlobalAveragePool", [var("x", [1, 3, 7, 7])]) == [[1, 3, 1, 1]]

    def test_reduce(self):
        assert infer("ReduceMean", [var("x", [2, 3, 4])], axes=[1], keepdims=0) == [[2, 4]]
        assert infer("ReduceSum", [var("x", [2, 3, 4]), const("axes", np.array([-1], dtype=np.int64))]) == [[2, 3, 1]]
        assert infer("ReduceMax", [var("x", [2, 3])]) == [[1, 1]]

    def test_einsum(self):
        assert infer("Einsum", [var("a", [2, 3]), var("b", [3, 4])], equation="ij,jk->ik") == [[2, 4]]

    def test_einsum_with_ellipsis_is_unknown(self):
        with pytest.raises(ShapeUnknown):
            infer("Einsum", [var("a", [2, 3])], equation="...ij->...ji")


class TestGenericRule(object):
    def test_unregistered_op_is_unknown(self):
        assert isinstance(OPERATOR_REGISTRY.get_rule("MyCustomOp"), GenericRule)
        assert infer("MyCustomOp", [var("x", [2])]) == [None]

    def test_foreign_domain_is_unknown(self):
        assert isinstance(OPERATOR_REGISTRY.get_rule("Add", "com.example"), GenericRule)

    def test_registry_lists_rules(self):
        assert OPERATOR_REGISTRY.contains("Reshape")
        assert not OPERATOR_REGISTRY.contains("MyCustomOp")
        assert OPERATOR_REGISTRY.list_operators()["Conv"] is type(OPERATOR_REGISTRY.get_rule("Conv"))
        assert len(OPERATOR_REGISTRY) > 50


class TestShapeEngine(object):
    def test_propagates_through_graph(self):
        graph = make_graph(
            nodes=[
                helper.make_node("MatMul", ["x", "w"], ["mm"], name="matmul"),
                helper.make_node("Relu", ["mm"], ["r"], name="relu"),
                helper.make_node("Shape", ["r"], ["s"], name="shape"),
            ],
            inputs=[value_info("x", ["N", 3])],
            outputs=[value_info("s", None, TensorProto.INT64)],
            initializers=[initializer("w", np.ones((3, 5), dtype=np.float32))],
        )
        ShapeEngine().infer(graph)
        assert graph.tensor_map["mm"].shape == ["N", 5]
        assert graph.tensor_map["r"].dtype == TensorProto.FLOAT
        assert graph.tensor_map["s"].shape == [2]
        assert graph.tensor_map["s"].dtype == TensorProto.INT64
        assert not graph.tensor_map["s"].is_constant

    def test_unknown_stays_unknown(self):
        graph = make_graph(
            nodes=[helper.make_node("Relu", ["x"], ["y"], name="relu")],
            inputs=[helper.make_tensor_value_info("x", TensorProto.FLOAT, None)],
            outputs=[value_info("y", None)],
        )
        ShapeEngine().infer(graph)
        assert graph.tensor_map["y"].shape is None

    def test_failing_rule_degrades_to_unknown(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Add", ["a", "b"], ["c"], name="add"),
                helper.make_node("Relu", ["x"], ["y"], name="relu"),
            ],
            inputs=[value_info("a", [2]), value_info("b", [3]), value_info("x", [4])],
            outputs=[value_info("c", None), value_info("y", None)],
        )
        ShapeEngine().infer(graph)
        assert graph.tensor_map["c"].shape is None
        assert graph.tensor_map["y"].shape == [4]

    def test_unprovable_shape_keeps_dtype(self):
        graph = make_graph(
            nodes=[helper.make_node("Einsum", ["x"], ["y"], name="einsum", equation="...ij->...ji")],
            inputs=[value_info("x", [2, 3])],
            outputs=[value_info("y", None, TensorProto.UNDEFINED)],
        )
        ShapeEngine().infer(graph)
        assert graph.tensor_map["y"].shape is None
        assert graph.tensor_map["y"].dtype == TensorProto.FLOAT

    def test_declared_shape_kept_for_unknown_op(self):
        graph = make_graph(
            nodes=[helper.make_node("MyCustomOp", ["x"], ["y"], name="custom", domain="com.example")],
            inputs=[value_info("x", [2])],
            outputs=[value_info("y", [7])],
        )
        ShapeEngine().infer(graph)
        assert graph.tensor_map["y"].shape == [7]

    def test_declared_symbolic_dims_survive_merge(self):
        graph = make_graph(
            nodes=[helper.make_node("Add", ["x", "z"], ["y"], name="add")],
            inputs=[value_info("x", ["N", 3]), value_info("z", ["M", 3])],
            outputs=[value_info("y", ["B", 3])],
        )
        ShapeEngine().infer(graph)
        assert graph.tensor_map["y"].shape == ["B", 3]

    def test_runtime_input_with_default_is_not_read_as_constant(self):
        graph = make_graph(
            nodes=[helper.make_node("Reshape", ["x", "s"], ["y"], name="reshape")],
            inputs=[value_info("x", [2, 3]), value_info("s", [2], TensorProto.INT64)],
            outputs=[value_info("y", None)],
            initializers=[initializer("s", np.array([3, 2], dtype=np.int64))],
        )
        ShapeEngine().infer(graph)
        assert graph.tensor_map["y"].shape == [None, None]

    def test_input_shapes_override(self):
        graph = make_graph(
            nodes=[helper.make_node("Relu", ["x"], ["y"], name="relu")],
            inputs=[value_info("x", ["N", 3])],
            outputs=[value_info("y", None)],
        )
        ShapeEngine().infer(graph, {"x": [8, 3]})
        assert graph.tensor_map["y"].shape == [8, 3]

    def test_input_shapes_unknown_name(self):
        graph = make_graph(
            nodes=[helper.make_node("Relu", ["x"], ["y"], name="relu")],
            inputs=[value_info("x", [3])],
            outputs=[value_info("y", None)],
        )
        with pytest.raises(InvalidArgument):
            ShapeEngine().infer(graph, {"nope": [1]})
