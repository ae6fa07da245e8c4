"""
Tensor class for ONNX Graph Simplifier.
"""

import onnx
from onnx import helper, numpy_helper
import numpy as np
from typing import Optional

from onnx_graph_simplifier.core.types import DataType, Shape, is_known_dim, num_elements
from onnx_graph_simplifier.utils.logging import get_logger

logger = get_logger(__name__)


def numpy_to_onnx_dtype(np_dtype: np.dtype) -> int:
    """Map a numpy dtype to an ONNX element type, UNDEFINED when there is no match."""
    try:
        return helper.np_dtype_to_tensor_dtype(np.dtype(np_dtype))
    except (KeyError, TypeError, ValueError):
        return DataType.UNDEFINED.value


class Tensor:
    """
    A named, typed, shaped value in the computation graph.

    ``shape`` is None when even the rank is unknown. Individual dims may be
    ints, symbolic names or None. A tensor with a payload (``numpy``) is
    constant; payloads are treated as immutable and may be shared between
    graph copies.
    """

    def __init__(self,
                 name: str = "",
                 dtype: Optional[int] = None,
                 shape: Optional[Shape] = None,
                 data: Optional[np.ndarray] = None):
        self.name = name
        self.dtype = dtype
        self.shape = list(shape) if shape is not None else None
        self._data = None
        self.is_constant = False

        if data is not None:
            self.numpy = data

    @classmethod
    def from_onnx(cls, value_info: onnx.ValueInfoProto) -> 'Tensor':
        """
        Create a Tensor from an ONNX ValueInfoProto.

        Args:
            value_info: ONNX ValueInfoProto object

        Returns:
            New Tensor instance (no payload)
        """
        tensor = cls(value_info.name)

        if value_info.type.HasField('tensor_type'):
            tensor_type = value_info.type.tensor_type
            if tensor_type.elem_type != DataType.UNDEFINED.value:
                tensor.dtype = tensor_type.elem_type

            if tensor_type.HasField('shape'):
                shape = []
                for dim in tensor_type.shape.dim:
                    if dim.HasField('dim_value'):
                        shape.append(dim.dim_value)
                    elif dim.HasField('dim_param') and dim.dim_param:
                        shape.append(dim.dim_param)
                    else:
                        shape.append(None)
                tensor.shape = shape

        return tensor

    @classmethod
    def from_onnx_tensor(cls, tensor: onnx.TensorProto) -> 'Tensor':
        """
        Create a constant Tensor from an ONNX TensorProto.

        Args:
            tensor: ONNX TensorProto object

        Returns:
            New Tensor instance holding the decoded payload
        """
        result = cls(tensor.name, tensor.data_type)
        result.numpy = numpy_helper.to_array(tensor)
        return result

    def to_onnx_value_info(self) -> onnx.ValueInfoProto:
        """
        Convert the Tensor to an ONNX ValueInfoProto.

        Unknown dims are written without a value so that no shape is invented.
        """
        value_info = onnx.ValueInfoProto()
        value_info.name = self.name
        tensor_type = value_info.type.tensor_type
        tensor_type.elem_type = self.dtype if self.dtype is not None else DataType.UNDEFINED.value

        if self.shape is not None:
            tensor_type.shape.SetInParent()
            for dim in self.shape:
                dim_proto = tensor_type.shape.dim.add()
                if is_known_dim(dim):
                    dim_proto.dim_value = dim
                elif isinstance(dim, str):
                    dim_proto.dim_param = dim

        return value_info

    def to_onnx_tensor(self) -> onnx.TensorProto:
        """
        Convert the Tensor to an ONNX TensorProto.

        Raises:
            ValueError: If the tensor has no payload
        """
        if self._data is None:
            raise ValueError(f"Cannot convert tensor '{self.name}' to TensorProto: no data available")

        return numpy_helper.from_array(self._data, name=self.name)

    @property
    def numpy(self) -> Optional[np.ndarray]:
        """Get tensor data as numpy array."""
        return self._data

    @numpy.setter
    def numpy(self, array: Optional[np.ndarray]):
        """Set tensor data; shape and dtype follow the array."""
        if array is None:
            self._data = None
            self.is_constant = False
            return

        array = np.asarray(array)
        self._data = array
        self.is_constant = True
        self.shape = list(array.shape)

        elem_type = numpy_to_onnx_dtype(array.dtype)
        if elem_type != DataType.UNDEFINED.value:
            self.dtype = elem_type
        elif self.dtype is None:
            logger.warning(f"Unknown numpy dtype {array.dtype} for tensor '{self.name}'")

    @property
    def num_elements(self) -> Optional[int]:
        """Number of elements, None unless the shape is fully static."""
        return num_elements(self.shape)

    def copy(self, name: Optional[str] = None) -> 'Tensor':
        """Copy metadata; the payload is shared."""
        tensor = Tensor(self.name if name is None else name, self.dtype, self.shape)
        if self._data is not None:
            tensor._data = self._data
            tensor.is_constant = True
        return tensor

    def __repr__(self) -> str:
        dtype_str = f"dtype={self.dtype}" if self.dtype is not None else "dtype=unknown"
        shape_str = f"shape={self.shape}" if self.shape is not None else "shape=unknown"
        constant_str = "constant" if self.is_constant else "variable"
        return f"Tensor(name='{self.name}', {dtype_str}, {shape_str}, {constant_str})"
