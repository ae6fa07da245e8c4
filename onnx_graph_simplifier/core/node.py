"""
Node class for ONNX Graph Simplifier.
"""

import onnx
from onnx import numpy_helper
import numpy as np
from typing import Dict, List, Any, Optional, Set, Tuple
from collections import OrderedDict

from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)

# Operators whose result differs between runs
NON_DETERMINISTIC_OPS = {
    'RandomNormal', 'RandomUniform', 'RandomNormalLike', 'RandomUniformLike',
    'Multinomial', 'Bernoulli',
}


def _subgraph_outer_names(graph: onnx.GraphProto) -> List[str]:
    """Names a sub-graph reads from its enclosing scope, in first-use order."""
    defined: Set[str] = {vi.name for vi in graph.input}
    defined.update(init.name for init in graph.initializer)
    defined.update(init.values.name for init in graph.sparse_initializer)
    outer: List[str] = []

    def use(name):
        if name and name not in defined and name not in outer:
            outer.append(name)

    for node in graph.node:
        for name in node.input:
            use(name)
        for attr in node.attribute:
            nested = [attr.g] if attr.type == onnx.AttributeProto.GRAPH else list(attr.graphs)
            for sub in nested:
                for name in _subgraph_outer_names(sub):
                    use(name)
        defined.update(node.output)
    for output in graph.output:
        use(output.name)
    return outer


class Node:
    """Represents an operator node in the computation graph."""

    def __init__(self,
                 name: str = "",
                 op_type: str = "",
                 inputs: Optional[List[str]] = None,
                 outputs: Optional[List[str]] = None,
                 attributes: Optional[Dict[str, Any]] = None,
                 domain: str = ""):
        """
        Initialize a node.

        Args:
            name: Node name, unique within a graph
            op_type: Operator type
            inputs: Input tensor names ("" marks an omitted optional input)
            outputs: Output tensor names
            attributes: Attribute values
            domain: Operator domain (empty for ai.onnx)
        """
        self.name = name
        self.op_type = op_type
        self.inputs: List[str] = list(inputs or [])
        self.outputs: List[str] = list(outputs or [])
        self.attributes: Dict[str, Any] = OrderedDict(attributes or {})
        self.domain = domain
        # ONNX attribute type per name, kept so lists and scalars round-trip exactly
        self._attr_types: Dict[str, int] = {}

    @classmethod
    def from_onnx(cls, node_proto: onnx.NodeProto) -> 'Node':
        """
        Create a Node from an ONNX NodeProto.

        Args:
            node_proto: ONNX NodeProto object

        Returns:
            New Node instance
        """
        node = cls(node_proto.name, node_proto.op_type,
                   list(node_proto.input), list(node_proto.output),
                   domain=node_proto.domain)

        for attr in node_proto.attribute:
            node.attributes[attr.name] = Node._parse_attribute(attr)
            node._attr_types[attr.name] = attr.type

        return node

    def to_onnx(self) -> onnx.NodeProto:
        """
        Convert the Node to an ONNX NodeProto.

        Returns:
            ONNX NodeProto
        """
        node_proto = onnx.NodeProto()
        node_proto.name = self.name
        node_proto.op_type = self.op_type
        node_proto.domain = self.domain

        node_proto.input.extend(self.inputs)
        node_proto.output.extend(self.outputs)

        for name, value in self.attributes.items():
            attr = Node._make_attribute(name, value, self._attr_types.get(name))
            node_proto.attribute.append(attr)

        return node_proto

    def copy(self, name: Optional[str] = None) -> 'Node':
        """Copy the node; attribute payloads are shared."""
        node = Node(self.name if name is None else name, self.op_type,
                    self.inputs, self.outputs, self.attributes, self.domain)
        node._attr_types = dict(self._attr_types)
        return node

    @property
    def subgraphs(self) -> List[onnx.GraphProto]:
        """Graph-valued attributes (If branches, Loop/Scan bodies)."""
        graphs = []
        for value in self.attributes.values():
            if isinstance(value, onnx.GraphProto):
                graphs.append(value)
            elif isinstance(value, list) and value and isinstance(value[0], onnx.GraphProto):
                graphs.extend(value)
        return graphs

    @property
    def has_subgraph(self) -> bool:
        return bool(self.subgraphs)

    @property
    def implicit_inputs(self) -> List[str]:
        """Outer-scope tensor names read by this node's sub-graphs."""
        names: List[str] = []
        for graph in self.subgraphs:
            for name in _subgraph_outer_names(graph):
                if name not in names:
                    names.append(name)
        return names

    @property
    def all_inputs(self) -> List[str]:
        """Explicit non-empty inputs followed by implicit sub-graph inputs."""
        names = [name for name in self.inputs if name]
        for name in self.implicit_inputs:
            if name not in names:
                names.append(name)
        return names

    @property
    def is_deterministic(self) -> bool:
        return self.op_type not in NON_DETERMINISTIC_OPS

    def get_attr(self, name: str, default: Any = None) -> Any:
        """Get an attribute value, or ``default`` when absent."""
        return self.attributes.get(name, default)

    def set_attr(self, name: str, value: Any) -> None:
        """Set an attribute value; its ONNX type is inferred on export."""
        self.attributes[name] = value
        self._attr_types.pop(name, None)

    def signature(self) -> Tuple:
        """
        Hashable description of what this node computes.

        Two nodes with equal signatures produce equal outputs. Nodes with
        sub-graph attributes get a signature unique to their name.
        """
        if self.has_subgraph:
            return ('subgraph', self.name)
        attrs = []
        for key, value in sorted(self.attributes.items()):
            if isinstance(value, np.ndarray):
                value = ('tensor', str(value.dtype), value.shape, value.tobytes())
            elif isinstance(value, onnx.AttributeProto):
                value = ('raw', value.SerializeToString(deterministic=True))
            elif isinstance(value, list):
                value = tuple(
                    ('tensor', str(v.dtype), v.shape, v.tobytes()) if isinstance(v, np.ndarray) else v
                    for v in value
                )
            attrs.append((key, value))
        return (self.domain, self.op_type, tuple(self.inputs), len(self.outputs), tuple(attrs))

    @staticmethod
    def _parse_attribute(attr: onnx.AttributeProto) -> Any:
        """
        Parse an ONNX attribute into a Python value.

        Graph attributes are kept as GraphProto and passed through untouched.
        """
        if attr.type == onnx.AttributeProto.FLOAT:
            return attr.f
        elif attr.type == onnx.AttributeProto.INT:
            return attr.i
        elif attr.type == onnx.AttributeProto.STRING:
            return attr.s.decode('utf-8')
        elif attr.type == onnx.AttributeProto.TENSOR:
            return numpy_helper.to_array(attr.t)
        elif attr.type == onnx.AttributeProto.FLOATS:
            return list(attr.floats)
        elif attr.type == onnx.AttributeProto.INTS:
            return list(attr.ints)
        elif attr.type == onnx.AttributeProto.STRINGS:
            return [s.decode('utf-8') for s in attr.strings]
        elif attr.type == onnx.AttributeProto.TENSORS:
            return [numpy_helper.to_array(t) for t in attr.tensors]
        elif attr.type == onnx.AttributeProto.GRAPH:
            graph = onnx.GraphProto()
            graph.CopyFrom(attr.g)
            return graph
        elif attr.type == onnx.AttributeProto.GRAPHS:
            graphs = []
            for g in attr.graphs:
                graph = onnx.GraphProto()
                graph.CopyFrom(g)
                graphs.append(graph)
            return graphs
        else:
            # Sparse tensors, type protos: carried verbatim
            raw = onnx.AttributeProto()
            raw.CopyFrom(attr)
            return raw

    @staticmethod
    def _make_attribute(name: str, value: Any, attr_type: Optional[int] = None) -> onnx.AttributeProto:
        """
        Create an ONNX attribute.

        Args:
            name: Attribute name
            value: Attribute value
            attr_type: ONNX attribute type recorded at parse time, if any

        Returns:
            ONNX AttributeProto
        """
        attr = onnx.AttributeProto()
        attr.name = name

        if attr_type == onnx.AttributeProto.FLOATS or (
                attr_type is None and isinstance(value, list) and value and isinstance(value[0], float)):
            attr.type = onnx.AttributeProto.FLOATS
            attr.floats.extend(float(v) for v in value)
        elif attr_type == onnx.AttributeProto.INTS or (
                attr_type is None and isinstance(value, list) and value and isinstance(value[0], int)):
            attr.type = onnx.AttributeProto.INTS
            attr.ints.extend(int(v) for v in value)
        elif attr_type == onnx.AttributeProto.STRINGS or (
                attr_type is None and isinstance(value, list) and value and isinstance(value[0], str)):
            attr.type = onnx.AttributeProto.STRINGS
            attr.strings.extend(s.encode('utf-8') for s in value)
        elif attr_type == onnx.AttributeProto.TENSORS or (
                attr_type is None and isinstance(value, list) and value and isinstance(value[0], np.ndarray)):
            attr.type = onnx.AttributeProto.TENSORS
            attr.tensors.extend(numpy_helper.from_array(v) for v in value)
        elif attr_type == onnx.AttributeProto.GRAPHS or (
                attr_type is None and isinstance(value, list) and value and isinstance(value[0], onnx.GraphProto)):
            attr.type = onnx.AttributeProto.GRAPHS
            attr.graphs.extend(value)
        elif isinstance(value, onnx.AttributeProto):
            attr.CopyFrom(value)
            attr.name = name
        elif isinstance(value, onnx.GraphProto):
            attr.type = onnx.AttributeProto.GRAPH
            attr.g.CopyFrom(value)
        elif isinstance(value, np.ndarray):
            attr.type = onnx.AttributeProto.TENSOR
            attr.t.CopyFrom(numpy_helper.from_array(value))
        elif isinstance(value, bool) or isinstance(value, (int, np.integer)):
            if attr_type == onnx.AttributeProto.FLOAT:
                attr.type = onnx.AttributeProto.FLOAT
                attr.f = float(value)
            else:
                attr.type = onnx.AttributeProto.INT
                attr.i = int(value)
        elif isinstance(value, (float, np.floating)):
            attr.type = onnx.AttributeProto.FLOAT
            attr.f = float(value)
        elif isinstance(value, str):
            attr.type = onnx.AttributeProto.STRING
            attr.s = value.encode('utf-8')
        else:
            raise ValueError(f"Unsupported value type {type(value)} for attribute '{name}'")

        return attr

    def __repr__(self) -> str:
        return (f"Node(name='{self.name}', op_type='{self.op_type}', "
                f"inputs={self.inputs}, outputs={self.outputs})")
