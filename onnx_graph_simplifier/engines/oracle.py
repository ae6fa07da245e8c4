"""
Execution oracle contract for ONNX Graph Simplifier.

An oracle numerically evaluates a graph against concrete input tensors. The
simplifier never computes tensor values itself: every fold goes through the
oracle handed to the run. Hosts may install a process-wide default once, for
call sites that do not pass one explicitly; installing a different oracle
while a run is in progress is the host's responsibility to prevent.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from onnx_graph_simplifier.core.errors import InvalidArgument
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)


class ExecutionOracle(ABC):
    """
    Evaluates graphs on concrete tensors.

    Implementations need not be reentrant; the simplifier calls ``evaluate``
    from a single thread per run and never concurrently within one run.
    """

    @abstractmethod
    def evaluate(self, graph: Graph, inputs: Dict[str, Tensor]) -> Dict[str, Tensor]:
        """
        Evaluate ``graph``.

        Args:
            graph: Graph to run. The caller guarantees every graph input is
                present in ``inputs``.
            inputs: Concrete tensors by input name. They are borrowed and must
                not be modified.

        Returns:
            New tensors for exactly the graph's outputs, in output order

        Raises:
            ExecutionFailed: If the graph cannot be evaluated
        """


_default_oracle: Optional[ExecutionOracle] = None


def set_default_oracle(oracle: Optional[ExecutionOracle]) -> None:
    """
    Install the oracle used when a run is not given one.

    Passing None restores the built-in reference oracle.
    """
    global _default_oracle
    if oracle is not None and not isinstance(oracle, ExecutionOracle):
        raise InvalidArgument(f"Expected an ExecutionOracle, got {type(oracle).__name__}")
    _default_oracle = oracle
    logger.debug(f"Default execution oracle set to {type(oracle).__name__ if oracle else 'built-in'}")


def get_default_oracle() -> ExecutionOracle:
    """Installed default oracle, creating the built-in one on first use."""
    global _default_oracle
    if _default_oracle is None:
        from onnx_graph_simplifier.engines.compute_engine import ComputeEngine
        _default_oracle = ComputeEngine()
    return _default_oracle
