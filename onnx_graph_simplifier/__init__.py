"""
ONNX Graph Simplifier - constant folding, shape inference and structural
simplification for ONNX graphs.
"""

# Import operators first to register them
from onnx_graph_simplifier.operators import OPERATOR_REGISTRY

# Import version information
from onnx_graph_simplifier.version import __version__

# Import core classes
from onnx_graph_simplifier.config import DEFAULT_MAX_ITERATIONS, DEFAULT_TENSOR_SIZE_THRESHOLD, SimplifyConfig
from onnx_graph_simplifier.core.errors import (
    ExecutionFailed,
    InvalidArgument,
    InvalidRewrite,
    ParseFailed,
    SerializeFailed,
    ShapeUnknown,
    SimplificationFailed,
    SimplifierError,
    ThresholdExceeded,
)
from onnx_graph_simplifier.core.node import Node
from onnx_graph_simplifier.core.tensor import Tensor
from onnx_graph_simplifier.core.types import DataType
from onnx_graph_simplifier.engines.compute_engine import ComputeEngine
from onnx_graph_simplifier.engines.oracle import ExecutionOracle, get_default_oracle, set_default_oracle
from onnx_graph_simplifier.engines.shape_engine import ShapeEngine
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.model import (
    Model,
    simplify_bytes,
    simplify_in_place_with_paths,
    simplify_model,
    simplify_path,
)
from onnx_graph_simplifier.optimization.folding_record import FoldedOp, FoldingRecord, FoldOutcome
from onnx_graph_simplifier.optimization.pipeline import Pipeline, PipelineState, SimplifyResult, list_passes, simplify


def load_model(path_or_model):
    """Load an ONNX model."""
    return Model(path_or_model)


def infer_shapes(model_path, input_shapes=None, output_path=None):
    """Infer shapes for an ONNX model."""
    model = Model(model_path)
    model.infer_shapes(input_shapes)
    if output_path:
        model.save(output_path)
    return model
