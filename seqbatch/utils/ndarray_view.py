import enum
import math
from typing import Optional, Sequence, Union

import numpy as np
import scipy.sparse
import torch
from torch import Tensor

from ..config.runtime import default_dtype

HOST = torch.device("cpu")

SUPPORTED_DTYPES = (torch.float32, torch.float64)

DeviceLike = Union[torch.device, str, None]


class StorageFormat(enum.Enum):
    DENSE = "dense"
    SPARSE_CSC = "sparse_csc"


def require_supported_dtype(dtype: torch.dtype, what: str):
    if dtype not in SUPPORTED_DTYPES:
        raise NotImplementedError(
            f"{what} is not implemented for data type {dtype}; supported types "
            f"are {list(SUPPORTED_DTYPES)}"
        )


def as_device(device: DeviceLike) -> Optional[torch.device]:
    if device is None:
        return None
    return torch.device(device)


def same_device(a: torch.device, b: torch.device) -> bool:
    # torch.device("cuda") and torch.device("cuda:0") name the same device
    if a.type != b.type:
        return False
    if a.index is None or b.index is None:
        return a.type == "cpu" or (a.index or 0) == (b.index or 0)
    return a.index == b.index


class _Storage:
    """Mutable holder shared between aliases of one view."""

    __slots__ = ("tensor",)

    def __init__(self, tensor: Tensor):
        self.tensor = tensor


class NDArrayView:
    """A typed, shaped, device-resident buffer wrapping a torch.Tensor.

    Dense views hold a strided tensor with exactly the logical shape. Sparse
    views hold a 2D torch.sparse_csc tensor of size
    (shape[0], prod(shape[1:])), i.e. the leading axis gives the rows and all
    trailing axes are flattened into columns with the earliest trailing axis
    varying fastest.

    Aliases created with `alias` share storage: a write through any of them
    is visible to all. `deep_clone` is the only way to get an independent
    copy.
    """

    def __init__(
        self,
        tensor: Tensor,
        shape: Optional[Sequence[int]] = None,
        read_only: bool = False,
    ):
        if tensor.layout == torch.sparse_csc:
            if shape is None:
                shape = tuple(tensor.shape)
            shape = tuple(int(d) for d in shape)
            if tensor.ndim != 2:
                raise ValueError(
                    f"Expected a 2D CSC tensor for sparse data, got {tensor.ndim}D"
                )
            if len(shape) == 0 or tuple(tensor.shape) != _csc_matrix_size(shape):
                raise ValueError(
                    f"Shape {shape} is incompatible with CSC matrix of size "
                    f"{tuple(tensor.shape)}"
                )
        elif tensor.layout == torch.strided:
            if shape is not None and tuple(shape) != tuple(tensor.shape):
                tensor = tensor.reshape(tuple(shape))
            shape = tuple(tensor.shape)
        else:
            raise RuntimeError(f"Unsupported tensor layout {tensor.layout}")

        self._storage = _Storage(tensor)
        self._shape = shape
        self._read_only = read_only

    @classmethod
    def _from_storage(cls, storage: _Storage, shape: tuple, read_only: bool):
        view = cls.__new__(cls)
        view._storage = storage
        view._shape = shape
        view._read_only = read_only
        return view

    @classmethod
    def from_buffer(
        cls,
        buffer: Union[Sequence[float], np.ndarray, Tensor],
        sample_shape: Sequence[int],
        dtype: Optional[torch.dtype] = None,
        read_only: bool = False,
    ) -> "NDArrayView":
        """Wraps a flat buffer of samples stored back to back.

        Each sample occupies prod(sample_shape) consecutive elements laid out
        row-major. The resulting view has shape sample_shape + (length,).

        Args:
            buffer (Union[Sequence[float], np.ndarray, Tensor]): Flat sequence data.
            sample_shape (Sequence[int]): Shape of one sample.
            dtype (torch.dtype, optional): Element type. Defaults to the dtype of
                `buffer` for arrays and tensors, and to the configured default
                dtype for Python sequences.
            read_only (bool): Whether the view is read-only.

        Raises:
            ValueError: If the number of elements is not a multiple of the sample
                size.
        """
        sample_shape = tuple(int(d) for d in sample_shape)
        sample_size = math.prod(sample_shape)
        if sample_size <= 0:
            raise ValueError(f"Sample shape must have positive dims, got {sample_shape}")
        if isinstance(buffer, Tensor):
            flat = buffer.reshape(-1)
            if dtype is not None:
                flat = flat.to(dtype)
        elif isinstance(buffer, np.ndarray):
            flat = torch.as_tensor(buffer.reshape(-1), dtype=dtype)
        else:
            flat = torch.as_tensor(
                np.asarray(buffer), dtype=dtype if dtype is not None else default_dtype()
            ).reshape(-1)

        if flat.numel() % sample_size != 0:
            raise ValueError(
                "The number of elements in the sequence buffer "
                f"({flat.numel()}) must be a multiple of the sample size "
                f"({sample_size}) of sample shape {sample_shape}"
            )
        length = flat.numel() // sample_size
        tensor = flat.reshape((length,) + sample_shape).movedim(0, -1)
        return cls(tensor, read_only=read_only)

    @classmethod
    def from_sparse_csc(
        cls,
        shape: Sequence[int],
        col_starts: Union[Sequence[int], Tensor],
        row_indices: Union[Sequence[int], Tensor],
        values: Union[Sequence[float], Tensor],
        device: DeviceLike = None,
        read_only: bool = False,
        dtype: Optional[torch.dtype] = None,
    ) -> "NDArrayView":
        shape = tuple(int(d) for d in shape)
        col_starts = torch.as_tensor(col_starts, dtype=torch.long)
        row_indices = torch.as_tensor(row_indices, dtype=torch.long)
        values = torch.as_tensor(values, dtype=dtype)
        tensor = torch.sparse_csc_tensor(
            col_starts,
            row_indices,
            values,
            size=_csc_matrix_size(shape),
            device=as_device(device) or HOST,
        )
        return cls(tensor, shape, read_only=read_only)

    @classmethod
    def from_scipy(
        cls,
        matrix: scipy.sparse.spmatrix,
        sample_shape: Optional[Sequence[int]] = None,
        read_only: bool = False,
    ) -> "NDArrayView":
        """Converts a scipy sparse matrix whose columns are time steps."""
        csc = scipy.sparse.csc_matrix(matrix, copy=True)
        csc.sum_duplicates()
        n_rows, n_cols = csc.shape
        if sample_shape is None:
            shape = (n_rows, n_cols)
        else:
            sample_shape = tuple(int(d) for d in sample_shape)
            if sample_shape[0] != n_rows or math.prod(sample_shape) != n_rows:
                raise ValueError(
                    f"Sample shape {sample_shape} does not match the {n_rows} "
                    "rows of the sparse matrix"
                )
            shape = sample_shape + (n_cols,)
        return cls.from_sparse_csc(
            shape,
            torch.from_numpy(csc.indptr.astype(np.int64)),
            torch.from_numpy(csc.indices.astype(np.int64)),
            torch.from_numpy(csc.data),
            read_only=read_only,
        )

    @property
    def tensor(self) -> Tensor:
        return self._storage.tensor

    def writable_tensor(self) -> Tensor:
        if self._read_only:
            raise RuntimeError("Cannot write to a read-only NDArrayView")
        return self._storage.tensor

    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    @property
    def rank(self) -> int:
        return len(self._shape)

    @property
    def numel(self) -> int:
        return math.prod(self._shape)

    @property
    def dtype(self) -> torch.dtype:
        return self.tensor.dtype

    @property
    def device(self) -> torch.device:
        return self.tensor.device

    @property
    def storage_format(self) -> StorageFormat:
        if self.tensor.layout == torch.sparse_csc:
            return StorageFormat.SPARSE_CSC
        return StorageFormat.DENSE

    @property
    def is_sparse(self) -> bool:
        return self.storage_format != StorageFormat.DENSE

    @property
    def is_read_only(self) -> bool:
        return self._read_only

    def col_starts(self) -> Tensor:
        return self._csc().ccol_indices()

    def row_indices(self) -> Tensor:
        return self._csc().row_indices()

    def values(self) -> Tensor:
        return self._csc().values()

    def nnz(self) -> int:
        return int(self._csc()._nnz())

    def _csc(self) -> Tensor:
        if not self.is_sparse:
            raise RuntimeError("Sparse accessors require a SPARSE_CSC view")
        return self.tensor

    def alias(self, read_only: bool = False) -> "NDArrayView":
        """Returns a view sharing this view's storage.

        An alias of a read-only view is always read-only.
        """
        return NDArrayView._from_storage(
            self._storage, self._shape, read_only or self._read_only
        )

    def reshaped(self, shape: Sequence[int]) -> "NDArrayView":
        """Returns an alias with a different logical shape of the same size."""
        shape = tuple(int(d) for d in shape)
        if math.prod(shape) != self.numel:
            raise ValueError(f"Cannot reshape view of shape {self._shape} to {shape}")
        if self.is_sparse:
            if shape[0] != self._shape[0]:
                raise ValueError(
                    "Reshaping a sparse view must keep the leading dimension, got "
                    f"{self._shape} -> {shape}"
                )
            return NDArrayView._from_storage(self._storage, shape, self._read_only)
        return NDArrayView(self.tensor.reshape(shape), read_only=self._read_only)

    def deep_clone(self, device: DeviceLike = None, read_only: bool = False) -> "NDArrayView":
        device = as_device(device) or self.device
        if same_device(device, self.device):
            tensor = self.tensor.clone()
        else:
            tensor = self.tensor.to(device)
        return NDArrayView(tensor, self._shape, read_only=read_only)

    def to_dense(self, device: DeviceLike = None) -> "NDArrayView":
        """Returns a dense copy of this view, on the host unless `device` is given."""
        device = as_device(device) or HOST
        tensor = self.tensor
        if self.is_sparse:
            # densify where the data lives, then move the result
            tensor = tensor.to_dense().t().reshape(_reversed(self._shape[1:]) + self._shape[:1])
            tensor = tensor.permute(_csc_dense_permutation(len(self._shape)))
            tensor = tensor.to(device)
        elif same_device(device, self.device):
            tensor = tensor.clone()
        else:
            tensor = tensor.to(device)
        return NDArrayView(tensor.contiguous(), self._shape)

    def copy_from(self, source: "NDArrayView"):
        """Overwrites this view's values with those of `source`."""
        if self._read_only:
            raise RuntimeError("Cannot copy into a read-only NDArrayView")
        if source.shape != self._shape:
            raise ValueError(
                f"Cannot copy a view of shape {source.shape} into a view of "
                f"shape {self._shape}"
            )
        if not self.is_sparse:
            src = source.to_dense(source.device).tensor if source.is_sparse else source.tensor
            self.tensor.copy_(src)
            return
        if source.is_sparse:
            src = source.tensor
        else:
            src = _dense_to_csc(source.tensor, self._shape)
        self._storage.tensor = src.to(device=self.device, dtype=self.dtype, copy=True)

    def __repr__(self) -> str:
        return (
            f"NDArrayView(shape={self._shape}, dtype={self.dtype}, "
            f"device={self.device}, format={self.storage_format.value}, "
            f"read_only={self._read_only})"
        )


def _csc_matrix_size(shape: Sequence[int]) -> tuple[int, int]:
    return (int(shape[0]), math.prod(shape[1:]))


def _reversed(dims: Sequence[int]) -> tuple:
    return tuple(reversed(tuple(dims)))


def _csc_dense_permutation(rank: int) -> tuple:
    # dense matrix transposed to (cols, rows) and reshaped to
    # (d_k, ..., d_1, d_0); undo the reversal of the trailing axes
    return (rank - 1,) + tuple(range(rank - 2, -1, -1))


def _dense_to_csc(tensor: Tensor, shape: Sequence[int]) -> Tensor:
    # inverse of the densification in NDArrayView.to_dense; the axis reversal
    # is its own inverse
    matrix = tensor.permute(_csc_dense_permutation(len(shape)))
    matrix = matrix.reshape(_csc_matrix_size(shape)[::-1]).t().contiguous()
    return matrix.to_sparse_csc()

