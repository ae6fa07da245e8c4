"""
Constant folding optimization for ONNX Graph Simplifier.

A node is foldable when every input it reads is a constant initializer. Its
outputs are computed by the execution oracle and bound to the same names as
new initializers. Nodes are visited in topological order, so a chain of
constant nodes collapses within a single sweep.
"""

from typing import Dict, List, Optional, Set

from onnx_graph_simplifier.core.errors import ExecutionFailed, ThresholdExceeded
from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.operators.registry import ONNX_DOMAINS
from onnx_graph_simplifier.operators.tensor_ops import constant_node_value
from onnx_graph_simplifier.optimization.folding_record import FoldedOp, FoldOutcome
from onnx_graph_simplifier.optimization.passes import OptimizerPass, PassContext
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)

# Quantization boundaries stay in the graph so backends can still fuse them
NO_FOLD_OPS = {'QuantizeLinear', 'DequantizeLinear', 'DynamicQuantizeLinear'}


def is_foldable(graph: Graph, node: Node, skip_ops: Set[str] = frozenset()) -> bool:
    """
    Check whether a node can be replaced by its computed outputs.

    Args:
        graph: Computation graph
        node: Candidate node
        skip_ops: Operator types excluded from folding

    Returns:
        True if every input is a constant initializer and the op may be folded
    """
    if node.op_type in skip_ops or node.op_type in NO_FOLD_OPS:
        return False
    if not node.is_deterministic or node.has_subgraph:
        return False
    if not any(node.outputs):
        return False
    return all(graph.is_constant(name) for name in node.all_inputs)


def _check_size(name: str, size: Optional[int], threshold: int) -> None:
    # A zero threshold turns folding off, empty results included
    if threshold == 0 or (size is not None and size > threshold):
        raise ThresholdExceeded(name, size, threshold)


def _node_subgraph(graph: Graph, node: Node) -> Graph:
    """The smallest graph computing ``node``: its inputs, the node and its outputs."""
    subgraph = Graph(f"{graph.name}/{node.name}")
    subgraph.opset_imports = dict(graph.opset_imports)
    subgraph.ir_version = graph.ir_version
    for name in node.all_inputs:
        if name not in subgraph.inputs:
            source = graph.tensor_map[name]
            subgraph.inputs.append(name)
            subgraph.tensor_map[name] = Tensor(name, source.dtype, source.shape)
    subgraph.add_node(node.copy())
    for name in node.outputs:
        if name:
            subgraph.outputs.append(name)
            declared = graph.tensor_map.get(name)
            if declared is not None:
                subgraph.tensor_map[name] = Tensor(name, declared.dtype, declared.shape)
    return subgraph


class ConstantFoldingPass(OptimizerPass):
    """
    Folds constant nodes through the execution oracle.

    Each foldable node produces exactly one ``FoldedOp``. An oracle failure
    or an oversized result leaves the node in place and is recorded, never
    raised.
    """

    name = "constant_folding"

    def run(self, graph: Graph, context: PassContext) -> int:
        """
        Perform constant folding optimization on the graph.

        Args:
            graph: Computation graph
            context: Run context carrying the configuration, oracle and record

        Returns:
            Number of nodes folded
        """
        skip_ops = context.config.skip_optimizers
        folded = 0
        for node in graph.topological_order():
            if node.name in context.unfoldable or not is_foldable(graph, node, skip_ops):
                continue
            outcome = self.fold_node(graph, node, context)
            if outcome is FoldOutcome.FOLDED:
                folded += 1

        if folded:
            logger.debug(f"Folded {folded} nodes in graph '{graph.name}'")
        return folded

    def fold_node(self, graph: Graph, node: Node, context: PassContext) -> FoldOutcome:
        """
        Try to fold one node and record the attempt.

        Returns:
            Outcome of the attempt
        """
        threshold = context.config.tensor_size_threshold
        outcome = FoldOutcome.FOLDED
        error_msg: Optional[str] = None

        try:
            for name in node.outputs:
                if not name:
                    continue
                tensor = graph.tensor_map.get(name)
                _check_size(name, tensor.num_elements if tensor is not None else None, threshold)

            values = self._evaluate(graph, node, context)

            for name, tensor in values.items():
                _check_size(name, tensor.num_elements, threshold)

            graph.replace_with_initializers([node.name], values)
        except ThresholdExceeded as e:
            outcome = FoldOutcome.DECLINED
            error_msg = str(e)
        except ExecutionFailed as e:
            outcome = FoldOutcome.FAILED
            error_msg = e.reason

        if outcome is FoldOutcome.FOLDED:
            logger.debug(f"Folded node {node.name} ({node.op_type})")
        else:
            context.unfoldable.add(node.name)
            logger.debug(f"Did not fold node {node.name} ({node.op_type}): {error_msg}")

        if context.record is not None:
            context.record.record_fold(FoldedOp(
                op_type=node.op_type,
                op_name=node.name,
                inputs=tuple(node.inputs),
                outputs=tuple(node.outputs),
                outcome=outcome,
                error_msg=error_msg,
            ))
        return outcome

    @staticmethod
    def _evaluate(graph: Graph, node: Node, context: PassContext) -> Dict[str, Tensor]:
        """Run the oracle on the node and check that every output came back."""
        subgraph = _node_subgraph(graph, node)
        inputs = {name: graph.tensor_map[name] for name in subgraph.inputs}
        results = context.oracle.evaluate(subgraph, inputs)

        values: Dict[str, Tensor] = {}
        missing: List[str] = []
        for name in subgraph.outputs:
            tensor = results.get(name)
            if tensor is None or tensor.numpy is None:
                missing.append(name)
            else:
                values[name] = tensor
        if missing:
            raise ExecutionFailed(f"Oracle returned no value for {missing}")
        return values


class ExtractConstantToInitializer(ConstantFoldingPass):
    """
    Constant nodes become initializers under their output name.

    The value comes from the node attribute rather than the oracle, but the
    attempt is size-checked and recorded like any other fold.
    """

    name = "extract_constant_to_initializer"

    def run(self, graph: Graph, context: PassContext) -> int:
        skip_ops = context.config.skip_optimizers
        count = 0
        for node in list(graph.nodes):
            if node.op_type != 'Constant' or node.domain not in ONNX_DOMAINS or len(node.outputs) != 1:
                continue
            if node.name in context.unfoldable or node.op_type in skip_ops:
                continue
            if constant_node_value(node) is None:
                continue
            if self.fold_node(graph, node, context) is FoldOutcome.FOLDED:
                count += 1
        return count

    @staticmethod
    def _evaluate(graph: Graph, node: Node, context: PassContext) -> Dict[str, Tensor]:
        output = node.outputs[0]
        return {output: Tensor(output, data=constant_node_value(node))}
