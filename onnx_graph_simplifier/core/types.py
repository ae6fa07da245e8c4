"""
Core type definitions for ONNX Graph Simplifier.
"""

from enum import Enum
from typing import Dict, List, Optional, Union


class DataType(Enum):
    """Enum of ONNX data types."""
    UNDEFINED = 0
    FLOAT = 1
    UINT8 = 2
    INT8 = 3
    UINT16 = 4
    INT16 = 5
    INT32 = 6
    INT64 = 7
    STRING = 8
    BOOL = 9
    FLOAT16 = 10
    DOUBLE = 11
    UINT32 = 12
    UINT64 = 13
    COMPLEX64 = 14
    COMPLEX128 = 15
    BFLOAT16 = 16


# A dimension is a concrete size, a symbolic name (dim_param) or unknown (None)
Dim = Union[int, str, None]
# A shape of None means the rank itself is unknown
Shape = List[Dim]
TensorDict = Dict[str, 'Tensor']
NodeDict = Dict[str, 'Node']


def is_known_dim(dim: Dim) -> bool:
    """Check whether a dimension has a concrete size."""
    return isinstance(dim, int) and not isinstance(dim, bool) and dim >= 0


def is_static_shape(shape: Optional[Shape]) -> bool:
    """Check whether every dimension of a shape is known."""
    return shape is not None and all(is_known_dim(dim) for dim in shape)


def num_elements(shape: Optional[Shape]) -> Optional[int]:
    """
    Element count of a shape.

    Args:
        shape: Tensor shape

    Returns:
        Number of elements, or None when the shape is not fully static
    """
    if not is_static_shape(shape):
        return None
    count = 1
    for dim in shape:
        count *= dim
    return count


def merge_dims(a: Dim, b: Dim) -> Dim:
    """Pick the more informative of two dims that describe the same axis."""
    if is_known_dim(a):
        return a
    if is_known_dim(b):
        return b
    return a if a is not None else b
