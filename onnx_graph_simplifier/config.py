"""
Run configuration for ONNX Graph Simplifier.
"""

import numbers
from dataclasses import dataclass, field
from typing import FrozenSet

from onnx_graph_simplifier.core.errors import InvalidArgument

# Largest folded tensor, in elements
DEFAULT_TENSOR_SIZE_THRESHOLD = 1 << 20
# Pipeline iterations before a still-changing graph is reported as non-convergent
DEFAULT_MAX_ITERATIONS = 10


@dataclass(frozen=True)
class SimplifyConfig:
    """
    Immutable configuration of one simplification run.

    ``skip_optimizers`` holds pass names (see ``list_passes``) and operator
    types; a pass name disables that pass, an operator type keeps nodes of
    that type out of constant folding. Names that match neither are ignored.
    ``tensor_size_threshold`` counts elements, not bytes.
    """

    skip_optimizers: FrozenSet[str] = field(default_factory=frozenset)
    constant_folding: bool = True
    shape_inference: bool = True
    tensor_size_threshold: int = DEFAULT_TENSOR_SIZE_THRESHOLD
    max_iterations: int = DEFAULT_MAX_ITERATIONS

    def __post_init__(self):
        skip = self.skip_optimizers
        if skip is None:
            skip = frozenset()
        elif isinstance(skip, str) or not isinstance(skip, (list, tuple, set, frozenset)):
            raise InvalidArgument(
                f"skip_optimizers must be a collection of names, got {type(skip).__name__}"
            )
        for name in skip:
            if not isinstance(name, str):
                raise InvalidArgument(f"Optimizer names must be strings, got {name!r}")
        object.__setattr__(self, 'skip_optimizers', frozenset(skip))

        for flag in ('constant_folding', 'shape_inference'):
            if not isinstance(getattr(self, flag), bool):
                raise InvalidArgument(f"{flag} must be a bool, got {getattr(self, flag)!r}")

        threshold = self.tensor_size_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, numbers.Integral) or threshold < 0:
            raise InvalidArgument(f"tensor_size_threshold must be a non-negative integer, got {threshold!r}")
        object.__setattr__(self, 'tensor_size_threshold', int(threshold))

        iterations = self.max_iterations
        if isinstance(iterations, bool) or not isinstance(iterations, numbers.Integral) or iterations < 1:
            raise InvalidArgument(f"max_iterations must be a positive integer, got {iterations!r}")
        object.__setattr__(self, 'max_iterations', int(iterations))

    def skips(self, name: str) -> bool:
        """Check whether a pass or operator type is in the skip-list."""
        return name in self.skip_optimizers
