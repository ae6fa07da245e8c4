"""
Simplification pipeline for ONNX Graph Simplifier.

A run copies the graph, infers shapes, then applies the optimizer passes in a
fixed order, iteration after iteration, until one iteration changes nothing.
"""

from enum import Enum
from typing import List, NamedTuple, Optional, Sequence

from tqdm import tqdm

from onnx_graph_simplifier.config import SimplifyConfig
from onnx_graph_simplifier.core.errors import InvalidArgument, InvalidRewrite, SimplificationFailed
from onnx_graph_simplifier.engines.oracle import ExecutionOracle, get_default_oracle
from onnx_graph_simplifier.engines.shape_engine import ShapeEngine
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.optimization.constant_folding import ConstantFoldingPass, ExtractConstantToInitializer
from onnx_graph_simplifier.optimization.folding_record import FoldingRecord
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
    OptimizerPass,
    PassContext,
    ReplaceStaticShape,
)
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)

# Order in which passes run within one iteration
DEFAULT_PASSES = (
    ExtractConstantToInitializer,
    ConstantFoldingPass,
    ReplaceStaticShape,
    EliminateIdentity,
    EliminateNopDropout,
    EliminateNopTranspose,
    FuseConsecutiveTransposes,
    EliminateNopReshape,
    EliminateCommonSubexpression,
    EliminateDuplicateInitializer,
    EliminateUnusedInitializer,
    EliminateDeadend,
)


def list_passes() -> List[str]:
    """Names of the built-in passes, in run order."""
    return [cls.name for cls in DEFAULT_PASSES]


class PipelineState(Enum):
    INITIALIZED = "initialized"
    SHAPE_INFERRING = "shape_inferring"
    OPTIMIZING = "optimizing"
    CONVERGED = "converged"
    DONE = "done"


class SimplifyResult(NamedTuple):
    graph: Graph
    record: FoldingRecord


class Pipeline:
    """
    One configured simplification run.

    The pipeline owns its FoldingRecord; the caller's graph is never
    modified. Runs on different Pipeline instances are independent, provided
    the oracle they share tolerates concurrent calls.
    """

    def __init__(self,
                 config: Optional[SimplifyConfig] = None,
                 oracle: Optional[ExecutionOracle] = None,
                 passes: Optional[Sequence[OptimizerPass]] = None,
                 shape_engine: Optional[ShapeEngine] = None,
                 show_progress: bool = False):
        """
        Initialize a pipeline.

        Args:
            config: Run configuration, defaults to ``SimplifyConfig()``
            oracle: Execution oracle, defaults to the process-wide default
            passes: Passes to run in order, defaults to every built-in pass
            shape_engine: Shape inference engine
            show_progress: Whether to draw a progress bar over iterations
        """
        if config is None:
            config = SimplifyConfig()
        if not isinstance(config, SimplifyConfig):
            raise InvalidArgument(f"Expected a SimplifyConfig, got {type(config).__name__}")
        if oracle is not None and not isinstance(oracle, ExecutionOracle):
            raise InvalidArgument(f"Expected an ExecutionOracle, got {type(oracle).__name__}")

        self.config = config
        self.oracle = oracle
        self.passes = list(passes) if passes is not None else [cls() for cls in DEFAULT_PASSES]
        self.shape_engine = shape_engine or ShapeEngine()
        self.show_progress = show_progress
        self.state = PipelineState.INITIALIZED
        self.iteration = 0

    def run(self, graph: Graph) -> SimplifyResult:
        """
        Simplify a copy of ``graph``.

        Returns:
            The simplified graph and the record of every folding attempt

        Raises:
            InvalidArgument: If ``graph`` is not a well-formed Graph
            SimplificationFailed: If a pass corrupts the graph or the graph
                is still changing after ``max_iterations`` iterations
        """
        if not isinstance(graph, Graph):
            raise InvalidArgument(f"Expected a Graph, got {type(graph).__name__}")
        try:
            graph.validate()
        except InvalidRewrite as e:
            raise InvalidArgument(f"Input graph is malformed: {e}") from e

        graph = graph.copy()
        record = FoldingRecord()
        oracle = self.oracle or get_default_oracle()
        context = PassContext(self.config, oracle, record)
        max_iterations = self.config.max_iterations

        self.state = PipelineState.SHAPE_INFERRING
        if self.config.shape_inference:
            self.shape_engine.infer(graph)

        iterations = tqdm(range(1, max_iterations + 1), desc="Simplifying", unit="iter",
                          disable=not self.show_progress, leave=False)
        for k in iterations:
            self.state = PipelineState.OPTIMIZING
            self.iteration = k
            if k > 1 and self.config.shape_inference:
                self.shape_engine.infer(graph)
            if not self._run_iteration(graph, context):
                self.state = PipelineState.CONVERGED
                logger.debug(f"Converged after {k} iterations")
                break
        else:
            # The last allowed iteration still made changes; one more sweep
            # tells a finished graph from one that keeps changing
            if self.config.shape_inference:
                self.shape_engine.infer(graph)
            if self._run_iteration(graph, context):
                raise SimplificationFailed(
                    f"Graph '{graph.name}' did not converge after {max_iterations} iterations"
                )
            self.state = PipelineState.CONVERGED

        self.state = PipelineState.DONE
        logger.info(f"Simplified graph '{graph.name}': {len(graph.nodes)} nodes, "
                    f"{record.total_succeeded} folded, {record.total_failed} not folded")
        return SimplifyResult(graph, record)

    def _run_iteration(self, graph: Graph, context: PassContext) -> bool:
        """Run every enabled pass once; True if any of them changed the graph."""
        changed = False
        for optimizer in self.passes:
            if not self._is_enabled(optimizer):
                continue
            try:
                count = optimizer.run(graph, context)
                if count:
                    graph.validate()
            except InvalidRewrite as e:
                raise SimplificationFailed(f"Pass '{optimizer.name}' produced an invalid graph: {e}") from e
            if count:
                logger.info(f"Iteration {self.iteration}: {optimizer.name} made {count} changes")
                changed = True
        return changed

    def _is_enabled(self, optimizer: OptimizerPass) -> bool:
        if self.config.skips(optimizer.name):
            return False
        if isinstance(optimizer, ConstantFoldingPass) and not self.config.constant_folding:
            return False
        return True


def simplify(graph: Graph,
             config: Optional[SimplifyConfig] = None,
             oracle: Optional[ExecutionOracle] = None) -> SimplifyResult:
    """
    Simplify a graph.

    Args:
        graph: Graph to simplify; it is not modified
        config: Run configuration
        oracle: Execution oracle, defaults to the process-wide default

    Returns:
        ``(simplified_graph, record)``
    """
    return Pipeline(config, oracle).run(graph)
