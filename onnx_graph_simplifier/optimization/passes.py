"""
Structural optimizer passes for ONNX Graph Simplifier.

Every pass has a stable ``name`` used for skip-list matching and rewrites the
graph only through Graph edit methods. ``run`` returns the number of
rewrites it made; zero means the pass left the graph untouched.
"""

import numpy as np
from typing import Dict, List, Optional, Tuple

from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.types import is_static_shape
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.operators.registry import ONNX_DOMAINS
from onnx_graph_simplifier.operators.tensor_ops import ReshapeRule
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)


class PassContext:
    """What a pass may consult besides the graph: configuration, oracle and audit record."""

    def __init__(self, config, oracle=None, record=None):
        self.config = config
        self.oracle = oracle
        self.record = record
        # Nodes whose fold was declined or failed; they are not retried within a run
        self.unfoldable = set()


class OptimizerPass:
    """Base class for a named graph rewrite."""

    name = ""

    def run(self, graph: Graph, context: PassContext) -> int:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name='{self.name}')"


def _is_onnx_op(node: Node, op_type: str) -> bool:
    return node.op_type == op_type and node.domain in ONNX_DOMAINS


class ReplaceStaticShape(OptimizerPass):
    """Shape of a tensor whose dims are all known becomes an int64 initializer."""

    name = "replace_static_shape"

    def run(self, graph: Graph, context: PassContext) -> int:
        threshold = context.config.tensor_size_threshold
        count = 0
        for node in list(graph.nodes):
            if not _is_onnx_op(node, 'Shape') or not node.inputs or not node.outputs[0]:
                continue
            shape = graph.tensor_map[node.inputs[0]].shape
            if shape is None:
                continue
            rank = len(shape)
            start = node.get_attr('start', 0)
            end = node.get_attr('end', rank)
            start = min(max(start + rank if start < 0 else start, 0), rank)
            end = min(max(end + rank if end < 0 else end, 0), rank)
            dims = shape[start:end]
            if not is_static_shape(dims):
                continue
            # Same size bound as constant folding; zero disables the rewrite
            if threshold == 0 or len(dims) > threshold:
                continue
            value = np.array(dims, dtype=np.int64)
            graph.replace_with_initializers([node.name], {node.outputs[0]: Tensor(node.outputs[0], data=value)})
            logger.debug(f"Replaced {node.name} with static shape {dims}")
            count += 1
        return count


class EliminateIdentity(OptimizerPass):
    name = "eliminate_identity"

    def run(self, graph: Graph, context: PassContext) -> int:
        return sum(1 for node in list(graph.nodes)
                   if _is_onnx_op(node, 'Identity') and graph.bypass(node))


class EliminateNopDropout(OptimizerPass):
    """Dropout outside training mode forwards its input."""

    name = "eliminate_nop_dropout"

    def run(self, graph: Graph, context: PassContext) -> int:
        count = 0
        for node in list(graph.nodes):
            if not _is_onnx_op(node, 'Dropout') or not self._is_inference(graph, node):
                continue
            if graph.bypass(node):
                count += 1
        return count

    @staticmethod
    def _is_inference(graph: Graph, node: Node) -> bool:
        if node.get_attr('is_test', 1) == 0:
            return False
        if len(node.inputs) > 2 and node.inputs[2]:
            name = node.inputs[2]
            if not graph.is_constant(name):
                return False
            return not bool(np.asarray(graph.tensor_map[name].numpy).reshape(-1)[0])
        return True


class EliminateNopTranspose(OptimizerPass):
    name = "eliminate_nop_transpose"

    def run(self, graph: Graph, context: PassContext) -> int:
        count = 0
        for node in list(graph.nodes):
            if not _is_onnx_op(node, 'Transpose'):
                continue
            perm = node.get_attr('perm')
            if perm is None:
                shape = graph.tensor_map[node.inputs[0]].shape
                if shape is None or len(shape) > 1:
                    continue
            elif list(perm) != list(range(len(perm))):
                continue
            if graph.bypass(node):
                count += 1
        return count


class FuseConsecutiveTransposes(OptimizerPass):
    """Transpose(Transpose(x, p1), p2) becomes Transpose(x, p1[p2])."""

    name = "fuse_consecutive_transposes"

    def run(self, graph: Graph, context: PassContext) -> int:
        count = 0
        for node in graph.topological_order():
            if not _is_onnx_op(node, 'Transpose') or node.get_attr('perm') is None:
                continue
            first = graph.producer(node.inputs[0])
            if first is None or not _is_onnx_op(first, 'Transpose') or first.get_attr('perm') is None:
                continue
            outer = list(first.get_attr('perm'))
            inner = list(node.get_attr('perm'))
            if len(outer) != len(inner):
                continue
            node.set_attr('perm', [outer[axis] for axis in inner])
            graph.set_node_input(node, 0, first.inputs[0])
            count += 1
        return count


class EliminateNopReshape(OptimizerPass):
    """Reshape whose result has the input's exact shape."""

    name = "eliminate_nop_reshape"

    def run(self, graph: Graph, context: PassContext) -> int:
        count = 0
        rule = ReshapeRule()
        for node in list(graph.nodes):
            if not _is_onnx_op(node, 'Reshape') or len(node.inputs) < 2:
                continue
            data = graph.tensor_map[node.inputs[0]]
            target = graph.tensor_map[node.inputs[1]]
            if data.shape is None or not graph.is_constant(target.name):
                continue
            try:
                result = rule.shape_infer(node, [data, target])[0]
            except ValueError:
                continue
            if result is None or None in result or result != data.shape:
                continue
            if graph.bypass(node):
                count += 1
        return count


class EliminateCommonSubexpression(OptimizerPass):
    """Nodes computing the same op on the same inputs are merged into the first one."""

    name = "eliminate_common_subexpression"

    def run(self, graph: Graph, context: PassContext) -> int:
        count = 0
        seen: Dict[Tuple, Node] = {}
        for node in graph.topological_order():
            if not node.is_deterministic or node.has_subgraph or not node.outputs:
                continue
            key = node.signature()
            original = seen.get(key)
            if original is None:
                seen[key] = node
                continue
            if not self._can_merge(graph, node, original):
                continue
            for duplicate, kept in zip(node.outputs, original.outputs):
                if duplicate:
                    graph.replace_uses(duplicate, kept)
            graph.remove_node(node)
            logger.debug(f"Merged {node.name} into {original.name}")
            count += 1
        return count

    @staticmethod
    def _can_merge(graph: Graph, node: Node, original: Node) -> bool:
        for duplicate, kept in zip(node.outputs, original.outputs):
            if not duplicate:
                continue
            if not kept and graph.is_referenced(duplicate):
                return False
            if duplicate in graph.outputs or graph.has_implicit_consumers(duplicate):
                return False
        return True


class EliminateDuplicateInitializer(OptimizerPass):
    """Initializers with equal type, shape and contents are merged into the first one."""

    name = "eliminate_duplicate_initializer"

    def run(self, graph: Graph, context: PassContext) -> int:
        count = 0
        seen: Dict[Tuple, str] = {}
        for name in list(graph.initializers):
            if not graph.is_constant(name):
                continue
            key = self._key(graph.tensor_map[name])
            if key is None:
                continue
            kept = seen.setdefault(key, name)
            if kept == name:
                continue
            if name in graph.outputs or graph.has_implicit_consumers(name):
                continue
            graph.replace_uses(name, kept)
            graph.remove_initializer(name)
            count += 1
        return count

    @staticmethod
    def _key(tensor: Tensor) -> Optional[Tuple]:
        array = tensor.numpy
        if array.dtype == object:
            return None
        return (tensor.dtype, array.dtype.str, array.shape, np.ascontiguousarray(array).tobytes())


class EliminateUnusedInitializer(OptimizerPass):
    name = "eliminate_unused_initializer"

    def run(self, graph: Graph, context: PassContext) -> int:
        unused = [name for name in graph.initializers
                  if not graph.is_referenced(name) and not graph.is_graph_input(name)]
        for name in unused:
            graph.remove_initializer(name)
        return len(unused)


class EliminateDeadend(OptimizerPass):
    """Nodes none of whose outputs reach a graph output."""

    name = "eliminate_deadend"

    def run(self, graph: Graph, context: PassContext) -> int:
        live = set(graph.outputs)
        dead: List[Node] = []
        for node in reversed(graph.topological_order()):
            if any(name in live for name in node.outputs if name):
                live.update(node.all_inputs)
            else:
                dead.append(node)
        if dead:
            graph.remove_nodes(dead)
        return len(dead)
