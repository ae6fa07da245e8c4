"""
Compute Engine for ONNX Graph Simplifier.
"""

import numpy as np
from typing import Dict

from onnx.reference import ReferenceEvaluator

from onnx_graph_simplifier.core.errors import ExecutionFailed
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.engines.oracle import ExecutionOracle
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)


class ComputeEngine(ExecutionOracle):
    """
    Execution oracle backed by the ONNX reference evaluator.

    Slow but dependency-free beyond ``onnx``; unsupported operators and
    custom domains surface as ``ExecutionFailed``.
    """

    def evaluate(self, graph: Graph, inputs: Dict[str, Tensor]) -> Dict[str, Tensor]:
        """
        Evaluate the graph on concrete tensors.

        Args:
            graph: Computation graph
            inputs: Dictionary mapping input names to tensors

        Returns:
            Dictionary mapping each graph output name to a new tensor
        """
        arrays = {}
        for name, tensor in inputs.items():
            if tensor.numpy is None:
                raise ExecutionFailed(f"Input tensor '{name}' has no value")
            arrays[name] = tensor.numpy

        values = self.execute(graph, arrays)
        return {name: Tensor(name, data=np.asarray(value)) for name, value in values.items()}

    def execute(self,
                graph: Graph,
                inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """
        Execute the graph with the given inputs.

        Args:
            graph: Computation graph
            inputs: Dictionary mapping input names to numpy arrays

        Returns:
            Dictionary mapping output names to numpy arrays, in output order

        Raises:
            ExecutionFailed: If an input is missing or the evaluator fails
        """
        missing = [name for name in graph.inputs if name not in inputs and not graph.is_initializer(name)]
        if missing:
            raise ExecutionFailed(f"Missing values for graph inputs: {missing}")
        unknown = [name for name in inputs if name not in graph.inputs]
        if unknown:
            raise ExecutionFailed(f"Unknown input tensors: {unknown}")

        try:
            evaluator = ReferenceEvaluator(graph.to_onnx())
            results = evaluator.run(None, dict(inputs))
        except Exception as e:
            logger.debug(f"Execution failed for graph '{graph.name}': {e}")
            raise ExecutionFailed(f"{type(e).__name__}: {e}") from e

        if len(results) != len(graph.outputs):
            raise ExecutionFailed(
                f"Evaluator returned {len(results)} values for {len(graph.outputs)} outputs"
            )

        outputs = {}
        for name, value in zip(graph.outputs, results):
            if not isinstance(value, (np.ndarray, np.generic)):
                raise ExecutionFailed(f"Output '{name}' is not a tensor ({type(value).__name__})")
            outputs[name] = np.asarray(value)
        return outputs
