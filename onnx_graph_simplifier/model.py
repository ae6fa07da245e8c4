"""
Top-level model class for ONNX Graph Simplifier.
"""

import os
import onnx
from google.protobuf.message import DecodeError, EncodeError
from typing import Dict, Optional, Tuple, Union

from onnx_graph_simplifier.config import SimplifyConfig
from onnx_graph_simplifier.core.errors import InvalidArgument, ParseFailed, SerializeFailed
from onnx_graph_simplifier.core.types import Shape
from onnx_graph_simplifier.engines.oracle import ExecutionOracle
from onnx_graph_simplifier.graph.graph import Graph
from onnx_graph_simplifier.optimization.folding_record import FoldingRecord
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)


class Model:
    """Top-level model container, manages model loading, saving, and simplification."""

    def __init__(self, path_or_model: Union[str, bytes, onnx.ModelProto, None] = None):
        """
        Initialize model.

        Args:
            path_or_model: Model path, serialized model bytes or ONNX ModelProto object
        """
        self.graph: Optional[Graph] = None
        self.onnx_model: Optional[onnx.ModelProto] = None
        self.modelpath: Optional[str] = None
        self.record: Optional[FoldingRecord] = None
        self._shape_engine = None

        if path_or_model is not None:
            self.load(path_or_model)

    @property
    def shape_engine(self):
        """Lazy-loaded shape engine."""
        if self._shape_engine is None:
            from onnx_graph_simplifier.engines.shape_engine import ShapeEngine
            self._shape_engine = ShapeEngine()
        return self._shape_engine

    def load(self, path_or_model: Union[str, bytes, onnx.ModelProto]) -> 'Model':
        """
        Load model from a path, bytes or an ONNX ModelProto.

        Returns:
            Self for method chaining

        Raises:
            InvalidArgument: If the path does not exist or the argument type is wrong
            ParseFailed: If bytes or file contents are not a model
        """
        if isinstance(path_or_model, (str, os.PathLike)):
            path = os.fspath(path_or_model)
            if not os.path.exists(path):
                raise InvalidArgument(f"Model file not found: {path}")
            with open(path, 'rb') as f:
                self.onnx_model = _parse_model(f.read())
            self.modelpath = path
            logger.info(f"Model loaded from {path}")
        elif isinstance(path_or_model, (bytes, bytearray)):
            self.onnx_model = _parse_model(bytes(path_or_model))
            logger.info("Model loaded from bytes")
        elif isinstance(path_or_model, onnx.ModelProto):
            self.onnx_model = path_or_model
            logger.info("Model loaded from ModelProto object")
        else:
            raise InvalidArgument("path_or_model must be a file path, bytes or an onnx.ModelProto object")

        self.graph = Graph.from_onnx(self.onnx_model)
        return self

    def to_onnx(self) -> onnx.ModelProto:
        """Current graph as a ModelProto carrying the loaded model's metadata."""
        self._require_graph("export")
        return self.graph.to_onnx(self.onnx_model)

    def to_bytes(self) -> bytes:
        """
        Serialize the current graph.

        Raises:
            SerializeFailed: If the model cannot be encoded
        """
        model = self.to_onnx()
        try:
            return model.SerializeToString(deterministic=True)
        except (EncodeError, ValueError) as e:
            raise SerializeFailed(f"Cannot serialize model: {e}") from e

    def save(self, path: str) -> str:
        """
        Save model to file.

        Args:
            path: Output file path

        Returns:
            Path to saved file
        """
        data = self.to_bytes()
        with open(path, 'wb') as f:
            f.write(data)
        logger.info(f"Model saved to {path}")
        return path

    def infer_shapes(self, input_shapes: Optional[Dict[str, Shape]] = None) -> 'Model':
        """
        Infer shapes for the model.

        Args:
            input_shapes: Dictionary mapping input names to their shapes

        Returns:
            Self for method chaining
        """
        self._require_graph("infer shapes for")
        self.shape_engine.infer(self.graph, input_shapes)
        logger.info("Shape inference completed")
        return self

    def simplify(self,
                 config: Optional[SimplifyConfig] = None,
                 oracle: Optional[ExecutionOracle] = None,
                 show_progress: bool = False) -> 'Model':
        """
        Simplify the model, replacing its graph with the simplified one.

        The folding record of the run is kept in ``self.record``.

        Returns:
            Self for method chaining
        """
        from onnx_graph_simplifier.optimization.pipeline import Pipeline

        self._require_graph("simplify")
        before = len(self.graph.nodes)
        self.graph, self.record = Pipeline(config, oracle, show_progress=show_progress).run(self.graph)
        logger.info(f"Simplification complete: {before} -> {len(self.graph.nodes)} nodes")
        return self

    def _require_graph(self, action: str) -> None:
        if self.graph is None:
            raise InvalidArgument(f"No graph to {action}, load a model first")

    def __repr__(self) -> str:
        """String representation of the model."""
        if self.onnx_model and self.graph:
            return (f"Model(nodes={len(self.graph.nodes)}, inputs={len(self.graph.inputs)}, "
                    f"outputs={len(self.graph.outputs)})")
        else:
            return "Model(not loaded)"


def _parse_model(data: bytes) -> onnx.ModelProto:
    model = onnx.ModelProto()
    try:
        model.ParseFromString(data)
    except DecodeError as e:
        raise ParseFailed(f"Cannot parse model: {e}") from e
    if not model.HasField('graph'):
        raise ParseFailed("Parsed data does not contain a graph")
    return model


def simplify_model(model: onnx.ModelProto,
                   config: Optional[SimplifyConfig] = None,
                   oracle: Optional[ExecutionOracle] = None) -> Tuple[onnx.ModelProto, FoldingRecord]:
    """
    Simplify an in-memory ModelProto.

    Returns:
        ``(simplified_model, record)``; the input model is not modified
    """
    if not isinstance(model, onnx.ModelProto):
        raise InvalidArgument(f"Expected an onnx.ModelProto, got {type(model).__name__}")
    result = Model(model).simplify(config, oracle)
    return result.to_onnx(), result.record


def simplify_bytes(data: bytes,
                   config: Optional[SimplifyConfig] = None,
                   oracle: Optional[ExecutionOracle] = None) -> Tuple[bytes, FoldingRecord]:
    """
    Simplify a serialized model.

    Raises:
        InvalidArgument: If ``data`` is empty
        ParseFailed: If ``data`` is not a model
    """
    if not isinstance(data, (bytes, bytearray)) or not data:
        raise InvalidArgument("Model data must be non-empty bytes")
    result = Model(bytes(data)).simplify(config, oracle)
    return result.to_bytes(), result.record


def simplify_path(input_path: str,
                  output_path: str,
                  config: Optional[SimplifyConfig] = None,
                  oracle: Optional[ExecutionOracle] = None,
                  show_progress: bool = False) -> FoldingRecord:
    """
    Load a model file, simplify it and save the result.

    Returns:
        Folding record of the run

    Raises:
        InvalidArgument: If a path is empty or the input does not exist
    """
    if not input_path or not output_path:
        raise InvalidArgument("Both input and output paths are required")
    model = Model(input_path).simplify(config, oracle, show_progress=show_progress)
    model.save(output_path)
    return model.record


simplify_in_place_with_paths = simplify_path
