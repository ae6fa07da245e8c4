import numpy as np
from onnx import TensorProto, helper

from onnx_graph_simplifier.config import SimplifyConfig
from onnx_graph_simplifier.optimization.constant_folding import ExtractConstantToInitializer
from onnx_graph_simplifier.optimization.folding_record import FoldingRecord, FoldOutcome
from onnx_graph_simplifier.optimization.passes import (
    EliminateCommonSubexpression,
    EliminateDeadend,
    EliminateDuplicateInitializer,
    EliminateIdentity,
    EliminateNopDropout,
    EliminateNopReshape,
    EliminateNopTranspose,
    EliminateUnusedInitializer,
    FuseConsecutiveTransposes,
    PassContext,
    ReplaceStaticShape,
)
from onnx_models import initializer, make_graph, value_info


def run_pass(optimizer, graph, config=None, record=None):
    count = optimizer.run(graph, PassContext(config or SimplifyConfig(), record=record))
    graph.validate()
    return count


def single_op_graph(op_type, inputs, input_shape, initializers=(), **attrs):
    """x -> op -> y, with extra initializer inputs."""
    return make_graph(
        nodes=[helper.make_node(op_type, inputs, ["y"], name="op", **attrs),
               helper.make_node("Relu", ["y"], ["out"], name="relu")],
        inputs=[value_info("x", input_shape)],
        outputs=[value_info("out", None)],
        initializers=list(initializers),
    )


def constant_add_graph():
    """Constant -> c, Add(x, c) -> y."""
    value = helper.make_tensor("v", TensorProto.FLOAT, [2], [1.0, 2.0])
    return make_graph(
        nodes=[
            helper.make_node("Constant", [], ["c"], name="const", value=value),
            helper.make_node("Add", ["x", "c"], ["y"], name="add"),
        ],
        inputs=[value_info("x", [2])],
        outputs=[value_info("y", [2])],
    )


class TestExtractConstantToInitializer(object):
    def test_tensor_value(self):
        graph = constant_add_graph()
        assert run_pass(ExtractConstantToInitializer(), graph) == 1
        assert "const" not in graph.node_map
        assert graph.is_constant("c")
        assert np.array_equal(graph.tensor_map["c"].numpy, [1.0, 2.0])

    def test_value_ints(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Constant", [], ["shape"], name="const", value_ints=[3, 2]),
                helper.make_node("Reshape", ["x", "shape"], ["y"], name="reshape"),
            ],
            inputs=[value_info("x", [2, 3])],
            outputs=[value_info("y", [3, 2])],
        )
        assert run_pass(ExtractConstantToInitializer(), graph) == 1
        assert graph.tensor_map["shape"].dtype == TensorProto.INT64
        assert graph.tensor_map["shape"].numpy.tolist() == [3, 2]

    def test_extraction_is_recorded(self):
        graph = constant_add_graph()
        record = FoldingRecord()
        run_pass(ExtractConstantToInitializer(), graph, record=record)
        assert [(op.op_type, op.op_name, op.outcome) for op in record] == [
            ("Constant", "const", FoldOutcome.FOLDED),
        ]

    def test_threshold_declines_extraction(self):
        graph = constant_add_graph()
        record = FoldingRecord()
        config = SimplifyConfig(tensor_size_threshold=1)
        assert run_pass(ExtractConstantToInitializer(), graph, config, record) == 0
        assert "const" in graph.node_map
        assert not graph.is_constant("c")
        assert record.folded_ops[0].outcome is FoldOutcome.DECLINED

    def test_skipped_op_type_is_kept(self):
        graph = constant_add_graph()
        config = SimplifyConfig(skip_optimizers={"Constant"})
        assert run_pass(ExtractConstantToInitializer(), graph, config) == 0
        assert "const" in graph.node_map


class TestReplaceStaticShape(object):
    def test_static_shape_becomes_initializer(self):
        graph = single_op_graph("Shape", ["x"], [2, 3])
        assert run_pass(ReplaceStaticShape(), graph) == 1
        assert graph.tensor_map["y"].numpy.tolist() == [2, 3]
        assert graph.tensor_map["y"].dtype == TensorProto.INT64

    def test_symbolic_shape_is_kept(self):
        graph = single_op_graph("Shape", ["x"], ["N", 3])
        assert run_pass(ReplaceStaticShape(), graph) == 0
        assert "op" in graph.node_map

    def test_sliced_static_part(self):
        graph = single_op_graph("Shape", ["x"], ["N", 3, 4], start=1)
        assert run_pass(ReplaceStaticShape(), graph) == 1
        assert graph.tensor_map["y"].numpy.tolist() == [3, 4]

    def test_zero_threshold_keeps_shape_node(self):
        graph = single_op_graph("Shape", ["x"], [2, 3])
        assert run_pass(ReplaceStaticShape(), graph, SimplifyConfig(tensor_size_threshold=0)) == 0
        assert "op" in graph.node_map


class TestEliminateIdentity(object):
    def test_identity_removed(self):
        graph = single_op_graph("Identity", ["x"], [2])
        assert run_pass(EliminateIdentity(), graph) == 1
        assert graph.node_map["relu"].inputs == ["x"]

    def test_identity_between_input_and_output_kept(self):
        graph = make_graph(
            nodes=[helper.make_node("Identity", ["x"], ["y"], name="identity")],
            inputs=[value_info("x", [2])],
            outputs=[value_info("y", [2])],
        )
        assert run_pass(EliminateIdentity(), graph) == 0


class TestEliminateNopDropout(object):
    def test_inference_dropout_removed(self):
        graph = single_op_graph("Dropout", ["x"], [2])
        assert run_pass(EliminateNopDropout(), graph) == 1
        assert "op" not in graph.node_map

    def test_training_mode_dropout_kept(self):
        graph = single_op_graph("Dropout", ["x", "ratio", "training"], [2], initializers=[
            initializer("ratio", np.array(0.5, dtype=np.float32)),
            initializer("training", np.array(True)),
        ])
        assert run_pass(EliminateNopDropout(), graph) == 0

    def test_runtime_training_mode_kept(self):
        graph = make_graph(
            nodes=[helper.make_node("Dropout", ["x", "", "training"], ["y"], name="dropout")],
            inputs=[value_info("x", [2]), value_info("training", [], TensorProto.BOOL)],
            outputs=[value_info("y", [2])],
        )
        assert run_pass(EliminateNopDropout(), graph) == 0

    def test_used_mask_blocks_removal(self):
        graph = make_graph(
            nodes=[helper.make_node("Dropout", ["x"], ["y", "mask"], name="dropout"),
                   helper.make_node("Cast", ["mask"], ["m"], name="cast", to=TensorProto.FLOAT),
                   helper.make_node("Add", ["y", "m"], ["out"], name="add")],
            inputs=[value_info("x", [2])],
            outputs=[value_info("out", [2])],
        )
        assert run_pass(EliminateNopDropout(), graph) == 0


class TestTransposePasses(object):
    def test_identity_perm_removed(self):
        graph = single_op_graph("Transpose", ["x"], [2, 3], perm=[0, 1])
        assert run_pass(EliminateNopTranspose(), graph) == 1

    def test_real_perm_kept(self):
        graph = single_op_graph("Transpose", ["x"], [2, 3], perm=[1, 0])
        assert run_pass(EliminateNopTranspose(), graph) == 0

    def test_default_perm_on_vector_removed(self):
        graph = single_op_graph("Transpose", ["x"], [5])
        assert run_pass(EliminateNopTranspose(), graph) == 1

    def test_consecutive_transposes_fuse(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Transpose", ["x"], ["t"], name="first", perm=[1, 0, 2]),
                helper.make_node("Transpose", ["t"], ["y"], name="second", perm=[0, 2, 1]),
            ],
            inputs=[value_info("x", [2, 3, 4])],
            outputs=[value_info("y", [3, 4, 2])],
        )
        assert run_pass(FuseConsecutiveTransposes(), graph) == 1
        second = graph.node_map["second"]
        assert second.inputs == ["x"]
        assert second.get_attr("perm") == [1, 2, 0]
        assert graph.consumers("t") == []

    def test_inverse_transposes_reduce_to_nop(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Transpose", ["x"], ["t"], name="first", perm=[1, 0]),
                helper.make_node("Transpose", ["t"], ["u"], name="second", perm=[1, 0]),
                helper.make_node("Relu", ["u"], ["y"], name="relu"),
            ],
            inputs=[value_info("x", [2, 3])],
            outputs=[value_info("y", [2, 3])],
        )
        run_pass(FuseConsecutiveTransposes(), graph)
        assert run_pass(EliminateNopTranspose(), graph) == 1
        assert graph.node_map["relu"].inputs == ["x"]


class TestEliminateNopReshape(object):
    def test_same_shape_removed(self):
        graph = single_op_graph("Reshape", ["x", "shape"], [2, 3], initializers=[
            initializer("shape", np.array([0, -1], dtype=np.int64))])
        assert run_pass(EliminateNopReshape(), graph) == 1
        assert graph.node_map["relu"].inputs == ["x"]

    def test_real_reshape_kept(self):
        graph = single_op_graph("Reshape", ["x", "shape"], [2, 3], initializers=[
            initializer("shape", np.array([3, 2], dtype=np.int64))])
        assert run_pass(EliminateNopReshape(), graph) == 0

    def test_unknown_dims_kept(self):
        graph = single_op_graph("Reshape", ["x", "shape"], ["N", 3], initializers=[
            initializer("shape", np.array([-1, 3], dtype=np.int64))])
        assert run_pass(EliminateNopReshape(), graph) == 0


class TestEliminateCommonSubexpression(object):
    def test_duplicates_merged(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Relu", ["x"], ["a"], name="relu_a"),
                helper.make_node("Relu", ["x"], ["b"], name="relu_b"),
                helper.make_node("Add", ["a", "b"], ["y"], name="add"),
            ],
            inputs=[value_info("x", [2])],
            outputs=[value_info("y", [2])],
        )
        assert run_pass(EliminateCommonSubexpression(), graph) == 1
        assert "relu_b" not in graph.node_map
        assert graph.node_map["add"].inputs == ["a", "a"]

    def test_different_attributes_not_merged(self):
        graph = make_graph(
            nodes=[
                helper.make_node("LeakyRelu", ["x"], ["a"], name="leaky_a", alpha=0.1),
                helper.make_node("LeakyRelu", ["x"], ["b"], name="leaky_b", alpha=0.2),
                helper.make_node("Add", ["a", "b"], ["y"], name="add"),
            ],
            inputs=[value_info("x", [2])],
            outputs=[value_info("y", [2])],
        )
        assert run_pass(EliminateCommonSubexpression(), graph) == 0

    def test_graph_output_duplicate_kept(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Relu", ["x"], ["a"], name="relu_a"),
                helper.make_node("Relu", ["x"], ["b"], name="relu_b"),
            ],
            inputs=[value_info("x", [2])],
            outputs=[value_info("a", [2]), value_info("b", [2])],
        )
        assert run_pass(EliminateCommonSubexpression(), graph) == 0


class TestInitializerPasses(object):
    def test_duplicate_initializers_merged(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Add", ["x", "c1"], ["a"], name="add"),
                helper.make_node("Mul", ["a", "c2"], ["y"], name="mul"),
            ],
            inputs=[value_info("x", [2])],
            outputs=[value_info("y", [2])],
            initializers=[initializer("c1", np.ones(2, dtype=np.float32)),
                          initializer("c2", np.ones(2, dtype=np.float32))],
        )
        assert run_pass(EliminateDuplicateInitializer(), graph) == 1
        assert graph.initializers == ["c1"]
        assert graph.node_map["mul"].inputs == ["a", "c1"]

    def test_different_dtypes_not_merged(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Add", ["x", "c1"], ["a"], name="add"),
                helper.make_node("Add", ["i", "c2"], ["y"], name="add_int"),
            ],
            inputs=[value_info("x", [2]), value_info("i", [2], TensorProto.INT64)],
            outputs=[value_info("a", [2]), value_info("y", [2], TensorProto.INT64)],
            initializers=[initializer("c1", np.ones(2, dtype=np.float32)),
                          initializer("c2", np.ones(2, dtype=np.int64))],
        )
        assert run_pass(EliminateDuplicateInitializer(), graph) == 0

    def test_unused_initializer_removed(self):
        graph = make_graph(
            nodes=[helper.make_node("Relu", ["x"], ["y"], name="relu")],
            inputs=[value_info("x", [2]), value_info("default", [2])],
            outputs=[value_info("y", [2])],
            initializers=[initializer("unused", np.ones(2, dtype=np.float32)),
                          initializer("default", np.ones(2, dtype=np.float32))],
        )
        assert run_pass(EliminateUnusedInitializer(), graph) == 1
        assert graph.initializers == ["default"]


class TestEliminateDeadend(object):
    def test_dead_chain_removed(self):
        graph = make_graph(
            nodes=[
                helper.make_node("Neg", ["x"], ["a"], name="neg"),
                helper.make_node("Abs", ["a"], ["b"], name="abs"),
                helper.make_node("Relu", ["x"], ["y"], name="relu"),
            ],
            inputs=[value_info("x", [2])],
            outputs=[value_info("y", [2])],
        )
        assert run_pass(EliminateDeadend(), graph) == 2
        assert [node.name for node in graph.nodes] == ["relu"]

    def test_live_graph_untouched(self):
        graph = single_op_graph("Neg", ["x"], [2])
        assert run_pass(EliminateDeadend(), graph) == 0
