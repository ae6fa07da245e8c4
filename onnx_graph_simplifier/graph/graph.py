"""
Graph class for ONNX Graph Simplifier.
"""

import onnx
from onnx import helper
from typing import Dict, Iterable, List, Optional, Union
from collections import defaultdict
import networkx as nx

from onnx_graph_simplifier.core.errors import InvalidArgument, InvalidRewrite
from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OPSET = 13
DEFAULT_IR_VERSION = 8


class Graph:
    """
    Represents a computation graph, manages nodes and tensors.

    Invariant: every name a node reads (explicitly or from a sub-graph) and
    every graph output is defined by a graph input, an initializer or exactly
    one node output. Edit methods raise ``InvalidRewrite`` instead of breaking
    it.
    """

    def __init__(self, name: str = "graph"):
        """Initialize an empty graph."""
        self.name = name
        self.nodes: List[Node] = []  # Nodes in topological order
        self.node_map: Dict[str, Node] = {}  # Map from node name to Node object
        self.tensor_map: Dict[str, Tensor] = {}  # Map from tensor name to Tensor object
        self.inputs: List[str] = []  # Names of input tensors
        self.outputs: List[str] = []  # Names of output tensors
        self.initializers: List[str] = []  # Names of initializer tensors
        self.sparse_initializers: List[onnx.SparseTensorProto] = []  # Carried through untouched
        self.opset_imports: Dict[str, int] = {"": DEFAULT_OPSET}
        self.ir_version = DEFAULT_IR_VERSION

        # Cached graph structure for traversal
        self._consumers: Dict[str, List[str]] = defaultdict(list)  # tensor_name -> [consumer_node_names]
        self._producers: Dict[str, str] = {}  # tensor_name -> producer_node_name
        # Declaration order, used to break ties in topological order
        self._order: Dict[str, int] = {}
        self._next_order = 0

    @classmethod
    def from_onnx(cls, model: onnx.ModelProto) -> 'Graph':
        """
        Create a Graph from an ONNX ModelProto.

        Args:
            model: ONNX ModelProto object

        Returns:
            New Graph instance

        Raises:
            InvalidArgument: If the model is not a well-formed DAG
        """
        if not isinstance(model, onnx.ModelProto):
            raise InvalidArgument(f"Expected an onnx.ModelProto, got {type(model).__name__}")

        graph = cls(model.graph.name or "graph")
        graph.ir_version = model.ir_version or DEFAULT_IR_VERSION
        if model.opset_import:
            graph.opset_imports = {opset.domain: opset.version for opset in model.opset_import}

        for input_proto in model.graph.input:
            graph.inputs.append(input_proto.name)
            graph.tensor_map[input_proto.name] = Tensor.from_onnx(input_proto)

        for initializer in model.graph.initializer:
            graph.initializers.append(initializer.name)
            tensor = Tensor.from_onnx_tensor(initializer)
            declared = graph.tensor_map.get(initializer.name)
            if declared is not None and declared.shape is not None and tensor.shape is None:
                tensor.shape = declared.shape
            graph.tensor_map[initializer.name] = tensor

        for sparse in model.graph.sparse_initializer:
            graph.sparse_initializers.append(sparse)

        for output_proto in model.graph.output:
            graph.outputs.append(output_proto.name)
            if output_proto.name not in graph.tensor_map:
                graph.tensor_map[output_proto.name] = Tensor.from_onnx(output_proto)

        for value_info in model.graph.value_info:
            if value_info.name not in graph.tensor_map:
                graph.tensor_map[value_info.name] = Tensor.from_onnx(value_info)

        try:
            for i, node_proto in enumerate(model.graph.node):
                node = Node.from_onnx(node_proto)
                # ONNX does not require node names; nodes are keyed by name here
                if not node.name or node.name in graph.node_map:
                    node.name = graph.unique_node_name(f"{node.op_type}_{i}")
                graph.add_node(node, check=False)
            graph.topological_sort()
        except InvalidRewrite as e:
            raise InvalidArgument(f"Malformed graph '{graph.name}': {e}") from e

        return graph

    def to_onnx(self, model: Optional[onnx.ModelProto] = None) -> onnx.ModelProto:
        """
        Convert the Graph back to an ONNX ModelProto.

        Args:
            model: Optional original model whose metadata (producer, functions,
                metadata props) is carried over. It is not modified.

        Returns:
            ONNX ModelProto
        """
        result = onnx.ModelProto()
        if model is not None:
            result.CopyFrom(model)
            result.ClearField('graph')
        else:
            result.producer_name = "onnx_graph_simplifier"
        result.ir_version = self.ir_version
        del result.opset_import[:]
        result.opset_import.extend(
            helper.make_opsetid(domain, version) for domain, version in self.opset_imports.items()
        )

        graph_proto = result.graph
        graph_proto.name = self.name

        for name in self.inputs:
            graph_proto.input.append(self.tensor_map[name].to_onnx_value_info())

        for name in self.initializers:
            graph_proto.initializer.append(self.tensor_map[name].to_onnx_tensor())

        graph_proto.sparse_initializer.extend(self.sparse_initializers)

        for name in self.outputs:
            graph_proto.output.append(self.tensor_map[name].to_onnx_value_info())

        for node in self.nodes:
            graph_proto.node.append(node.to_onnx())

        # Value infos for intermediate tensors with known type or shape
        interface = set(self.inputs) | set(self.outputs) | set(self.initializers)
        for node in self.nodes:
            for name in node.outputs:
                tensor = self.tensor_map.get(name)
                if name and name not in interface and tensor is not None and (
                        tensor.shape is not None or tensor.dtype is not None):
                    graph_proto.value_info.append(tensor.to_onnx_value_info())

        return result

    def copy(self) -> 'Graph':
        """Deep structural copy; constant payloads are shared."""
        graph = Graph(self.name)
        graph.inputs = list(self.inputs)
        graph.outputs = list(self.outputs)
        graph.initializers = list(self.initializers)
        graph.sparse_initializers = list(self.sparse_initializers)
        graph.opset_imports = dict(self.opset_imports)
        graph.ir_version = self.ir_version
        graph.tensor_map = {name: tensor.copy() for name, tensor in self.tensor_map.items()}
        for node in self.nodes:
            graph.add_node(node.copy(), check=False)
        graph._order = dict(self._order)
        graph._next_order = self._next_order
        return graph

    # ------------------------------------------------------------------
    # Structural queries
    # ------------------------------------------------------------------

    def is_graph_input(self, name: str) -> bool:
        return name in self.inputs

    def is_initializer(self, name: str) -> bool:
        return name in self.tensor_map and name in self.initializers

    def is_constant(self, name: str) -> bool:
        """An initializer that callers cannot override through a graph input."""
        return self.is_initializer(name) and not self.is_graph_input(name)

    def is_defined(self, name: str) -> bool:
        """Check whether a tensor name resolves to a value in this graph."""
        if not name:
            return True
        if name in self.inputs or name in self.initializers or name in self._producers:
            return True
        return any(sparse.values.name == name for sparse in self.sparse_initializers)

    def producer(self, name: str) -> Optional[Node]:
        """Node producing a tensor, None for inputs, initializers and unknown names."""
        node_name = self._producers.get(name)
        return self.node_map.get(node_name) if node_name else None

    def consumers(self, name: str) -> List[Node]:
        """Nodes reading a tensor, explicitly or from a sub-graph, in graph order."""
        names = set(self._consumers.get(name, []))
        return [node for node in self.nodes if node.name in names]

    def has_implicit_consumers(self, name: str) -> bool:
        """Check whether some sub-graph reads the tensor from the outer scope."""
        return any(name in node.implicit_inputs for node in self.consumers(name))

    def is_referenced(self, name: str) -> bool:
        """Check whether any node or graph output still reads a tensor."""
        return bool(self._consumers.get(name)) or name in self.outputs

    def get_tensor(self, name: str) -> Tensor:
        """Tensor record for a name, created empty on first use."""
        if name not in self.tensor_map:
            self.tensor_map[name] = Tensor(name)
        return self.tensor_map[name]

    def topological_order(self) -> List[Node]:
        """
        Nodes with producers before consumers.

        Ties between independent nodes are broken by declaration order so the
        result is stable across runs.
        """
        dg = nx.DiGraph()
        for node in self.nodes:
            dg.add_node(node.name)
        for node in self.nodes:
            for input_name in node.all_inputs:
                producer = self._producers.get(input_name)
                if producer and producer != node.name:
                    dg.add_edge(producer, node.name)

        try:
            sorted_names = list(nx.lexicographical_topological_sort(dg, key=lambda name: self._order[name]))
        except nx.NetworkXUnfeasible:
            raise InvalidRewrite(f"Graph '{self.name}' contains a cycle")
        return [self.node_map[name] for name in sorted_names]

    def topological_sort(self) -> None:
        """Sort the nodes in topological order."""
        self.nodes = self.topological_order()

    # ------------------------------------------------------------------
    # Structural edits
    # ------------------------------------------------------------------

    def add_node(self, node: Node, check: bool = True) -> Node:
        """
        Add a node to the graph.

        Args:
            node: Node to add
            check: Whether to require every input to be defined already

        Returns:
            Added node

        Raises:
            InvalidRewrite: On duplicate node name, duplicate producer or an
                undefined input
        """
        if not node.name or node.name in self.node_map:
            raise InvalidRewrite(f"Node name '{node.name}' is empty or already exists in the graph")

        for output_name in node.outputs:
            if not output_name:
                continue
            if output_name in self._producers or output_name in self.inputs or output_name in self.initializers:
                raise InvalidRewrite(f"Node '{node.name}' redefines tensor '{output_name}'")

        if check:
            for input_name in node.all_inputs:
                if not self.is_defined(input_name) and input_name not in node.outputs:
                    raise InvalidRewrite(f"Node '{node.name}' reads undefined tensor '{input_name}'")

        self.nodes.append(node)
        self.node_map[node.name] = node
        self._order[node.name] = self._next_order
        self._next_order += 1

        for input_name in node.all_inputs:
            self.get_tensor(input_name)
            self._consumers[input_name].append(node.name)

        for output_name in node.outputs:
            if output_name:
                self.get_tensor(output_name)
                self._producers[output_name] = node.name

        return node

    def remove_node(self, node_or_name: Union[Node, str]) -> None:
        """
        Remove a node from the graph.

        Args:
            node_or_name: Node or node name to remove

        Raises:
            InvalidRewrite: If the node is unknown, or one of its outputs is
                still read and nothing else defines it
        """
        node = self._resolve(node_or_name)

        for output_name in node.outputs:
            if not output_name:
                continue
            readers = [name for name in self._consumers.get(output_name, []) if name != node.name]
            if (readers or output_name in self.outputs) and not (
                    output_name in self.inputs or output_name in self.initializers):
                raise InvalidRewrite(
                    f"Removing node '{node.name}' would leave tensor '{output_name}' undefined"
                )

        self._detach(node)

    def remove_nodes(self, nodes: Iterable[Union[Node, str]]) -> None:
        """
        Remove a set of nodes at once.

        Outputs consumed only inside the set are allowed to disappear.
        """
        doomed = [self._resolve(n) for n in nodes]
        doomed_names = {node.name for node in doomed}
        for node in doomed:
            for output_name in node.outputs:
                if not output_name:
                    continue
                readers = [name for name in self._consumers.get(output_name, []) if name not in doomed_names]
                if (readers or output_name in self.outputs) and not (
                        output_name in self.inputs or output_name in self.initializers):
                    raise InvalidRewrite(
                        f"Removing node '{node.name}' would leave tensor '{output_name}' undefined"
                    )
        for node in doomed:
            self._detach(node)

    def add_initializer(self, tensor: Tensor) -> Tensor:
        """
        Add a named constant tensor.

        Raises:
            InvalidRewrite: If the tensor has no payload or the name is taken
        """
        if tensor.numpy is None:
            raise InvalidRewrite(f"Initializer '{tensor.name}' has no data")
        if tensor.name in self.initializers or tensor.name in self.inputs:
            raise InvalidRewrite(f"Tensor '{tensor.name}' is already defined")
        self.initializers.append(tensor.name)
        self.tensor_map[tensor.name] = tensor
        return tensor

    def remove_initializer(self, name: str) -> None:
        """
        Remove an initializer.

        Raises:
            InvalidRewrite: If it is unknown, or still read and not a graph input
        """
        if name not in self.initializers:
            raise InvalidRewrite(f"Initializer '{name}' not found in graph")
        if self.is_referenced(name) and name not in self.inputs and name not in self._producers:
            raise InvalidRewrite(f"Initializer '{name}' is still referenced")
        self.initializers.remove(name)
        if name not in self.inputs:
            self.tensor_map.pop(name, None)
        else:
            self.tensor_map[name].numpy = None

    def replace_with_initializers(self, node_names: Iterable[str], values: Dict[str, Tensor]) -> None:
        """
        Replace nodes by literal tensors bound to their output names.

        Every output of the nodes that is still read from outside the set must
        have a value; the values become initializers under the same names and
        the nodes are removed.

        Raises:
            InvalidRewrite: If a still-read output has no value
        """
        doomed = [self._resolve(name) for name in node_names]
        doomed_names = {node.name for node in doomed}
        for node in doomed:
            for output_name in node.outputs:
                if not output_name or output_name in values:
                    continue
                readers = [n for n in self._consumers.get(output_name, []) if n not in doomed_names]
                if readers or output_name in self.outputs:
                    raise InvalidRewrite(
                        f"No value for tensor '{output_name}' produced by folded node '{node.name}'"
                    )
        produced = {name for node in doomed for name in node.outputs}
        for name in values:
            if name not in produced:
                raise InvalidRewrite(f"Tensor '{name}' is not produced by the replaced nodes")

        for node in doomed:
            self._detach(node)
        for name, tensor in values.items():
            constant = tensor.copy(name)
            declared = self.tensor_map.get(name)
            if constant.dtype is None and declared is not None:
                constant.dtype = declared.dtype
            self.tensor_map.pop(name, None)
            self.add_initializer(constant)

    def replace_uses(self, old_name: str, new_name: str, include_outputs: bool = False) -> int:
        """
        Point every explicit reader of ``old_name`` at ``new_name``.

        Args:
            old_name: Tensor whose readers are rewired
            new_name: Replacement tensor, must be defined
            include_outputs: Also rewrite graph outputs

        Returns:
            Number of rewritten references

        Raises:
            InvalidRewrite: If ``new_name`` is undefined or a sub-graph reads
                ``old_name`` implicitly
        """
        if not self.is_defined(new_name):
            raise InvalidRewrite(f"Cannot redirect '{old_name}' to undefined tensor '{new_name}'")
        if self.has_implicit_consumers(old_name):
            raise InvalidRewrite(f"Tensor '{old_name}' is read by a sub-graph and cannot be redirected")

        count = 0
        for node in self.consumers(old_name):
            for i, name in enumerate(node.inputs):
                if name == old_name:
                    node.inputs[i] = new_name
                    count += 1
            self._consumers[old_name] = [n for n in self._consumers[old_name] if n != node.name]
            if node.name not in self._consumers[new_name]:
                self._consumers[new_name].append(node.name)

        if include_outputs:
            for i, name in enumerate(self.outputs):
                if name == old_name:
                    self.outputs[i] = new_name
                    count += 1

        return count

    def set_node_input(self, node_or_name: Union[Node, str], index: int, new_name: str) -> None:
        """
        Point one input slot of a node at another tensor.

        Raises:
            InvalidRewrite: If the node is unknown or ``new_name`` is undefined
        """
        node = self._resolve(node_or_name)
        if not self.is_defined(new_name):
            raise InvalidRewrite(f"Cannot connect node '{node.name}' to undefined tensor '{new_name}'")
        old_name = node.inputs[index]
        node.inputs[index] = new_name
        if old_name and old_name not in node.all_inputs:
            self._consumers[old_name] = [n for n in self._consumers[old_name] if n != node.name]
        if new_name and node.name not in self._consumers[new_name]:
            self._consumers[new_name].append(node.name)

    def rename_tensor(self, old_name: str, new_name: str) -> None:
        """
        Rename a node-produced tensor everywhere it is referenced.

        Raises:
            InvalidRewrite: If ``old_name`` is not node-produced, ``new_name``
                is taken, or a sub-graph reads ``old_name`` implicitly
        """
        if old_name not in self._producers:
            raise InvalidRewrite(f"Only node outputs can be renamed, '{old_name}' is not one")
        if self.is_defined(new_name):
            raise InvalidRewrite(f"Cannot rename '{old_name}': '{new_name}' is already defined")
        if self.has_implicit_consumers(old_name):
            raise InvalidRewrite(f"Tensor '{old_name}' is read by a sub-graph and cannot be renamed")

        producer = self.node_map[self._producers.pop(old_name)]
        producer.outputs = [new_name if name == old_name else name for name in producer.outputs]
        self._producers[new_name] = producer.name

        readers = self._consumers.pop(old_name, [])
        for node_name in readers:
            node = self.node_map[node_name]
            node.inputs = [new_name if name == old_name else name for name in node.inputs]
        self._consumers[new_name].extend(readers)
        self.outputs = [new_name if name == old_name else name for name in self.outputs]

        tensor = self.tensor_map.pop(old_name, None) or Tensor(old_name)
        existing = self.tensor_map.get(new_name)
        renamed = tensor.copy(new_name)
        if existing is not None:
            renamed.dtype = renamed.dtype if renamed.dtype is not None else existing.dtype
            renamed.shape = renamed.shape if renamed.shape is not None else existing.shape
        self.tensor_map[new_name] = renamed

    def bypass(self, node_or_name: Union[Node, str]) -> bool:
        """
        Remove a node that forwards its first input unchanged to its first output.

        Readers of the output are pointed at the input. When the output is a
        graph output the input's producer is renamed to it instead, so the
        graph interface keeps its names.

        Returns:
            False when the node cannot be bypassed without changing the graph
            interface or editing a sub-graph
        """
        node = self._resolve(node_or_name)
        source = node.inputs[0] if node.inputs else ""
        target = next((name for name in node.outputs if name), "")
        if not source or not target:
            return False
        if self.has_implicit_consumers(target) or self.has_implicit_consumers(source):
            return False
        if any(self._consumers.get(name) or name in self.outputs for name in node.outputs[1:] if name):
            return False

        if target not in self.outputs:
            self.replace_uses(target, source)
            self._detach(node)
            return True

        producer = self.producer(source)
        if producer is None or source in self.outputs or target in self.inputs:
            return False
        self._detach(node)
        self.rename_tensor(source, target)
        return True

    def rename_node(self, old_name: str, new_name: str) -> None:
        """
        Rename a node, keeping its position in declaration order.

        Raises:
            InvalidRewrite: If ``old_name`` is unknown or ``new_name`` is taken
        """
        node = self._resolve(old_name)
        if not new_name or new_name in self.node_map:
            raise InvalidRewrite(f"Cannot rename node '{old_name}': '{new_name}' is empty or taken")
        del self.node_map[old_name]
        node.name = new_name
        self.node_map[new_name] = node
        self._order[new_name] = self._order.pop(old_name)
        for name, producer in list(self._producers.items()):
            if producer == old_name:
                self._producers[name] = new_name
        for readers in self._consumers.values():
            for i, reader in enumerate(readers):
                if reader == old_name:
                    readers[i] = new_name

    def unique_node_name(self, base: str) -> str:
        """A node name not yet used in this graph."""
        if base not in self.node_map:
            return base
        index = 1
        while f"{base}_{index}" in self.node_map:
            index += 1
        return f"{base}_{index}"

    def validate(self) -> None:
        """
        Check the dangling-reference invariant over the whole graph.

        Raises:
            InvalidRewrite: On the first violation found
        """
        seen_outputs = set()
        for node in self.nodes:
            for output_name in node.outputs:
                if not output_name:
                    continue
                if output_name in seen_outputs or output_name in self.inputs or output_name in self.initializers:
                    raise InvalidRewrite(f"Tensor '{output_name}' is defined more than once")
                seen_outputs.add(output_name)
        for node in self.nodes:
            for input_name in node.all_inputs:
                if not self.is_defined(input_name):
                    raise InvalidRewrite(f"Node '{node.name}' reads undefined tensor '{input_name}'")
        for output_name in self.outputs:
            if not self.is_defined(output_name):
                raise InvalidRewrite(f"Graph output '{output_name}' is undefined")
        for name in self.initializers:
            if self.tensor_map.get(name) is None or self.tensor_map[name].numpy is None:
                raise InvalidRewrite(f"Initializer '{name}' has no data")

    def _resolve(self, node_or_name: Union[Node, str]) -> Node:
        name = node_or_name if isinstance(node_or_name, str) else node_or_name.name
        if name not in self.node_map:
            raise InvalidRewrite(f"Node '{name}' not found in graph")
        return self.node_map[name]

    def _detach(self, node: Node) -> None:
        """Drop a node and its cache entries without any invariant check."""
        self.nodes.remove(node)
        del self.node_map[node.name]
        self._order.pop(node.name, None)

        for input_name in node.all_inputs:
            readers = self._consumers.get(input_name)
            if readers and node.name in readers:
                self._consumers[input_name] = [n for n in readers if n != node.name]

        for output_name in node.outputs:
            if self._producers.get(output_name) == node.name:
                del self._producers[output_name]

    def __repr__(self) -> str:
        return (f"Graph(nodes={len(self.nodes)}, initializers={len(self.initializers)}, "
                f"inputs={len(self.inputs)}, outputs={len(self.outputs)})")
