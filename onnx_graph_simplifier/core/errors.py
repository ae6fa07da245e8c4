"""
Exception types for ONNX Graph Simplifier.
"""

from typing import Optional


class SimplifierError(Exception):
    """Base class for every error raised by this package."""


class InvalidArgument(SimplifierError):
    """Malformed configuration or a missing required input at the API boundary."""


class InvalidRewrite(SimplifierError):
    """A structural edit would leave the graph with a dangling reference."""


class ExecutionFailed(SimplifierError):
    """The execution oracle could not evaluate a subgraph."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ThresholdExceeded(SimplifierError):
    """A fold was declined because its output is larger than the configured threshold."""

    def __init__(self, tensor_name: str, num_elements: Optional[int], threshold: int):
        size = "an unknown number of" if num_elements is None else num_elements
        super().__init__(f"threshold exceeded: '{tensor_name}' has {size} elements (threshold {threshold})")
        self.tensor_name = tensor_name
        self.num_elements = num_elements
        self.threshold = threshold


class ShapeUnknown(SimplifierError):
    """A shape rule cannot prove an output shape; the output stays unknown and nothing is reported."""


class SimplificationFailed(SimplifierError):
    """A run-fatal condition with no safe local recovery."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ParseFailed(SimplifierError):
    """Bytes could not be decoded into a model."""


class SerializeFailed(SimplifierError):
    """A model could not be encoded to bytes."""
