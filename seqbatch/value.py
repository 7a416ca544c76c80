import math
from typing import Any, MutableSequence, Optional, Sequence

import numpy as np
import torch

from .batching.construction import (
    create_batch_from_buffers,
    create_batch_from_views,
    create_one_hot_batch,
)
from .batching.extraction import OutputBuffer, batch_dims, copy_to_sequences, numpy_dtype
from .utils.mask import NDMask
from .utils.ndarray_view import DeviceLike, NDArrayView, StorageFormat


class Value:
    """A batch of sequences: padded data plus an optional validity mask.

    The data has shape sample_shape + (max_length, num_sequences), or
    sample_shape + (length,) for a single sequence. A mask of None means every
    sequence spans the full time axis and starts a new sequence.
    """

    def __init__(self, data: NDArrayView, mask: Optional[NDMask] = None):
        if mask is not None:
            data_shape = data.shape
            mask_shape = mask.shape
            if len(mask_shape) > len(data_shape):
                raise ValueError(
                    f"The rank ({len(mask_shape)}) of the mask of a Value cannot exceed "
                    f"the rank ({len(data_shape)}) of its data"
                )
            if data_shape[len(data_shape) - len(mask_shape) :] != mask_shape:
                raise ValueError(
                    "The data and mask are incompatible; the trailing dimensions of "
                    f"the data shape {data_shape} do not match the mask shape {mask_shape}"
                )
        self._data = data
        self._mask = mask

    @classmethod
    def from_views(
        cls,
        sample_shape: Sequence[int],
        sequences: Sequence[NDArrayView],
        sequence_start_flags: Optional[Sequence[bool]] = None,
        device: DeviceLike = None,
        read_only: bool = False,
        create_new_copy: bool = False,
    ) -> "Value":
        """Creates a batch from per-sequence views of shape sample_shape + (length,).

        With a single sequence and `create_new_copy` False, the returned value
        shares the sequence's storage when it already lives on `device`.
        """
        data, mask = create_batch_from_views(
            sample_shape, sequences, sequence_start_flags, device, read_only, create_new_copy
        )
        return cls(data, mask)

    @classmethod
    def from_sequences(
        cls,
        sample_shape: Sequence[int],
        sequences: Sequence[Any],
        sequence_start_flags: Optional[Sequence[bool]] = None,
        device: DeviceLike = None,
        read_only: bool = False,
        dtype: Optional[torch.dtype] = None,
    ) -> "Value":
        """Creates a batch from flat buffers holding samples back to back.

        Args:
            sample_shape (Sequence[int]): Shape of one sample.
            sequences (Sequence[Any]): One flat buffer (list, np.ndarray or 1D
                Tensor) per sequence. Its size must be a multiple of the sample
                size.
            sequence_start_flags (Sequence[bool], optional): Per-sequence start
                flags, all True when empty or None.
            device (DeviceLike, optional): Target device.
            read_only (bool): Whether the data is read-only.
            dtype (torch.dtype, optional): Element type for list buffers.
        """
        data, mask = create_batch_from_buffers(
            sample_shape, sequences, sequence_start_flags, device, read_only, dtype
        )
        return cls(data, mask)

    @classmethod
    def from_one_hot(
        cls,
        vocabulary_size: int,
        sequences: Sequence[Sequence[int]],
        sequence_start_flags: Optional[Sequence[bool]] = None,
        device: DeviceLike = None,
        read_only: bool = False,
        dtype: Optional[torch.dtype] = None,
    ) -> "Value":
        """Creates a sparse CSC batch of one-hot vectors from lists of indices."""
        data, mask = create_one_hot_batch(
            vocabulary_size, sequences, sequence_start_flags, device, read_only, dtype
        )
        return cls(data, mask)

    @property
    def data(self) -> NDArrayView:
        return self._data

    @property
    def mask(self) -> Optional[NDMask]:
        return self._mask

    @property
    def shape(self) -> tuple[int, ...]:
        return self.data.shape

    @property
    def dtype(self) -> torch.dtype:
        return self.data.dtype

    @property
    def device(self) -> torch.device:
        return self.data.device

    @property
    def storage_format(self) -> StorageFormat:
        return self.data.storage_format

    @property
    def is_sparse(self) -> bool:
        return self.storage_format != StorageFormat.DENSE

    @property
    def is_read_only(self) -> bool:
        return self.data.is_read_only

    def masked_count(self) -> int:
        mask = self.mask
        return 0 if mask is None else mask.masked_count()

    def deep_clone(self, read_only: bool = False) -> "Value":
        mask = self.mask
        return Value(
            self.data.deep_clone(read_only=read_only),
            mask.deep_clone() if mask is not None else None,
        )

    def alias(self, read_only: bool = False) -> "Value":
        mask = self.mask
        return Value(self.data.alias(read_only), mask.alias() if mask is not None else None)

    def copy_from(self, source: "Value"):
        """Copies the data and mask of `source` into this value in place.

        An unmasked source clears this value's mask.

        Raises:
            ValueError: If `source` has a mask and this value does not, or the
                shapes differ.
        """
        if self.mask is None and source.mask is not None:
            raise ValueError(
                "Cannot copy a Value with a mask into a Value that does not have a mask"
            )
        if source.mask is not None and source.mask.shape != self.mask.shape:
            raise ValueError(
                f"Cannot copy a mask of shape {source.mask.shape} into a mask of "
                f"shape {self.mask.shape}"
            )
        self.data.copy_from(source.data)
        if source.mask is not None:
            self.mask.copy_from(source.mask)
        elif self.mask is not None:
            self.mask.clear()

    def copy_to(
        self,
        sample_shape: Sequence[int],
        sequences: MutableSequence[OutputBuffer],
        sequence_lengths: MutableSequence[int],
    ):
        """Copies the unpadded samples of each sequence into pre-sized buffers.

        Buffers must have the value's element type when they are np.ndarrays or
        Tensors. See `copy_to_sequences` for details.
        """
        copy_to_sequences(self.data, self.mask, sample_shape, sequences, sequence_lengths)

    def copy_to_one_hot(
        self,
        vocabulary_size: int,
        sequences: MutableSequence[OutputBuffer],
        sequence_lengths: MutableSequence[int],
    ):
        """Decodes each one-hot sample to its index and copies them into `sequences`."""
        copy_to_sequences(
            self.data, self.mask, (vocabulary_size,), sequences, sequence_lengths, one_hot=True
        )

    def to_sequences(self, sample_shape: Sequence[int]) -> list[np.ndarray]:
        """Returns each sequence as an array of shape (length,) + sample_shape."""
        sample_shape = tuple(int(d) for d in sample_shape)
        sample_size = math.prod(sample_shape)
        num_sequences, max_length = batch_dims(self.shape, sample_shape)
        dtype = numpy_dtype(self.dtype)
        buffers = [np.zeros(max_length * sample_size, dtype=dtype) for _ in range(num_sequences)]
        lengths = [0] * num_sequences
        self.copy_to(sample_shape, buffers, lengths)
        return [
            buffer[: length * sample_size].reshape((length,) + sample_shape)
            for buffer, length in zip(buffers, lengths)
        ]

    def to_one_hot_sequences(self, vocabulary_size: int) -> list[list[int]]:
        num_sequences, max_length = batch_dims(self.shape, (vocabulary_size,))
        buffers = [[0] * max_length for _ in range(num_sequences)]
        lengths = [0] * num_sequences
        self.copy_to_one_hot(vocabulary_size, buffers, lengths)
        return [buffer[:length] for buffer, length in zip(buffers, lengths)]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(data={self.data!r}, mask={self.mask!r})"
