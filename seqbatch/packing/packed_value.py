import logging
from typing import Optional, Sequence

import torch
from torch import Tensor

from ..batching.mask_creation import create_mask
from ..config.runtime import automatic_unpacking_enabled, default_device
from ..utils.mask import NDMask
from ..utils.ndarray_view import (
    DeviceLike,
    NDArrayView,
    StorageFormat,
    as_device,
    require_supported_dtype,
)
from ..value import Value
from .layout import PackedLayout

_logger = logging.getLogger(__name__)


def packed_shape(sample_shape: Sequence[int], layout: PackedLayout) -> tuple[int, ...]:
    return tuple(sample_shape) + (layout.num_time_steps * layout.num_streams,)


def unpacked_shape(sample_shape: Sequence[int], layout: PackedLayout) -> tuple[int, ...]:
    return tuple(sample_shape) + (layout.num_time_steps, layout.num_sequences)


def unpack_packed_data(
    sample_shape: Sequence[int],
    packed_data: NDArrayView,
    layout: PackedLayout,
    read_only: bool = False,
) -> tuple[NDArrayView, Optional[NDMask]]:
    """Converts packed stream data to padded batch data and a mask.

    Args:
        sample_shape (Sequence[int]): Shape of one sample.
        packed_data (NDArrayView): Data of shape sample_shape +
            (num_time_steps * num_streams,) laid out as described by `layout`.
        layout (PackedLayout): Placement of the sequences in the streams.
        read_only (bool): Whether the returned data is read-only.

    Returns:
        data (NDArrayView): Data of shape sample_shape + (num_time_steps,
            num_sequences) on the packed data's device.
        mask (Optional[NDMask]): Validity mask, None when every sequence fills
            the window and starts inside it.
    """
    sample_shape = tuple(sample_shape)
    require_supported_dtype(packed_data.dtype, "Unpacking of packed values")
    num_time_steps = layout.num_time_steps
    device = packed_data.device

    mask = create_mask(
        layout.sequence_lengths(),
        layout.sequence_start_flags(),
        device,
        max_length=num_time_steps,
    )

    # columns t * num_streams + s become [..., t, s]; for sparse data that
    # only matches the CSC column order when one of the two axes is trivial
    reshapeable = not packed_data.is_sparse or num_time_steps == 1 or layout.num_streams == 1
    if layout.is_stream_aligned() and reshapeable:
        data = packed_data.reshaped(sample_shape + (num_time_steps, layout.num_streams))
        return data.alias(read_only=True) if read_only else data, mask

    if packed_data.is_sparse:
        source: Tensor = packed_data.to_dense(device).tensor
    else:
        source = packed_data.tensor

    out = torch.zeros(
        unpacked_shape(sample_shape, layout), dtype=packed_data.dtype, device=device
    )
    for n, entry in enumerate(layout.sequences):
        columns = layout.column_indices(entry, device)
        out[..., : columns.numel(), n] = source.index_select(-1, columns)
    return NDArrayView(out, read_only=read_only), mask


def pack_sequences(
    sample_shape: Sequence[int],
    sequences: Sequence[Tensor],
    num_streams: Optional[int] = None,
    device: DeviceLike = None,
) -> tuple[NDArrayView, PackedLayout]:
    """Packs dense sequences of shape sample_shape + (length,) into streams.

    Returns:
        packed_data (NDArrayView): Dense data of shape sample_shape +
            (num_time_steps * num_streams,).
        layout (PackedLayout): Layout produced by PackedLayout.pack.
    """
    sample_shape = tuple(int(d) for d in sample_shape)
    device = as_device(device) or default_device()
    if len(sequences) == 0:
        raise ValueError("The number of sequences is 0")
    for i, sequence in enumerate(sequences):
        if sequence.dtype != sequences[0].dtype:
            raise ValueError(
                "The data for all sequences must have the same data type, got "
                f"{sequence.dtype} for sequence {i} and {sequences[0].dtype} for sequence 0"
            )
        if tuple(sequence.shape[:-1]) != sample_shape:
            raise ValueError(
                f"The shape of sequence {i} {tuple(sequence.shape)} is not compatible "
                f"with the sample shape {sample_shape}"
            )

    layout = PackedLayout.pack([sequence.shape[-1] for sequence in sequences], num_streams)
    packed = torch.zeros(
        packed_shape(sample_shape, layout), dtype=sequences[0].dtype, device=device
    )
    for entry in layout.sequences:
        columns = layout.column_indices(entry, device)
        packed[..., columns] = sequences[entry.seq_id].to(device)
    return NDArrayView(packed), layout


class PackedValue(Value):
    """A Value whose padded form is computed from packed data on first access.

    The packed data is converted to data plus mask once, the first time `data`
    or `mask` is accessed or `unpack` is called, after which the packed fields
    are dropped. Shape, data type, device and masked count are available
    without unpacking.

    Unpacking mutates the object without synchronization; concurrent first
    access from multiple threads must be serialized by the caller.
    """

    def __init__(
        self,
        sample_shape: Sequence[int],
        packed_data: NDArrayView,
        layout: PackedLayout,
        read_only: bool = False,
    ):
        sample_shape = tuple(int(d) for d in sample_shape)
        expected = packed_shape(sample_shape, layout)
        if packed_data.shape != expected:
            raise ValueError(
                f"Packed data of shape {packed_data.shape} does not match the packed "
                f"shape {expected} of sample shape {sample_shape} and {layout}"
            )
        self._sample_shape = sample_shape
        self._packed_data: Optional[NDArrayView] = packed_data
        self._packed_layout: Optional[PackedLayout] = layout
        self._packed_read_only = read_only
        self._unpacked_shape = unpacked_shape(sample_shape, layout)
        self._is_packed = True
        self._data = None
        self._mask = None

    @classmethod
    def from_sequences(
        cls,
        sample_shape: Sequence[int],
        sequences: Sequence[Tensor],
        num_streams: Optional[int] = None,
        device: DeviceLike = None,
        read_only: bool = False,
    ) -> "PackedValue":
        """Packs dense sequences of shape sample_shape + (length,) into a PackedValue."""
        packed_data, layout = pack_sequences(sample_shape, sequences, num_streams, device)
        return cls(sample_shape, packed_data, layout, read_only)

    @property
    def is_packed(self) -> bool:
        return self._is_packed

    @property
    def packed_data(self) -> Optional[NDArrayView]:
        return self._packed_data

    @property
    def packed_layout(self) -> Optional[PackedLayout]:
        return self._packed_layout

    @property
    def sample_shape(self) -> tuple[int, ...]:
        return self._sample_shape

    @property
    def data(self) -> NDArrayView:
        self.unpack()
        return self._data

    @property
    def mask(self) -> Optional[NDMask]:
        self.unpack()
        return self._mask

    @property
    def shape(self) -> tuple[int, ...]:
        if self._is_packed:
            return self._unpacked_shape
        return self._data.shape

    @property
    def dtype(self) -> torch.dtype:
        if self._is_packed:
            return self._packed_data.dtype
        return self._data.dtype

    @property
    def device(self) -> torch.device:
        if self._is_packed:
            return self._packed_data.device
        return self._data.device

    @property
    def storage_format(self) -> StorageFormat:
        if self._is_packed:
            return self._packed_data.storage_format
        return self._data.storage_format

    @property
    def is_read_only(self) -> bool:
        if self._is_packed:
            return self._packed_read_only
        return self._data.is_read_only

    def masked_count(self) -> int:
        if self._is_packed:
            num_time_steps = self._packed_layout.num_time_steps
            return sum(num_time_steps - length for length in self._packed_layout.sequence_lengths())
        return super().masked_count()

    def unpack(self, automatic_unpacking: Optional[bool] = None):
        """Materializes the padded data and mask; a no-op once unpacked.

        Args:
            automatic_unpacking (bool, optional): Whether implicit unpacking of
                padded data is allowed. Defaults to the process-wide setting.

        Raises:
            RuntimeError: If unpacking is disallowed and the packed data has
                more than one time step and more than one sequence, or if the
                unpacked data does not have the expected shape.
        """
        if not self._is_packed:
            return

        layout = self._packed_layout
        if automatic_unpacking is None:
            automatic_unpacking = automatic_unpacking_enabled()
        if not automatic_unpacking and layout.num_time_steps > 1 and layout.num_sequences > 1:
            raise RuntimeError(
                "Automatic unpacking of PackedValue objects is disabled; unpack "
                f"{self!r} explicitly"
            )

        _logger.debug(
            "Unpacking %d sequences over %d time steps to shape %s",
            layout.num_sequences,
            layout.num_time_steps,
            self._unpacked_shape,
        )
        data, mask = unpack_packed_data(
            self._sample_shape, self._packed_data, layout, self._packed_read_only
        )
        if data.shape != self._unpacked_shape:
            raise RuntimeError(
                f"The computed unpacked shape {self._unpacked_shape} of the PackedValue "
                f"does not match the shape {data.shape} of the data after unpacking"
            )

        self._data = data
        self._mask = mask
        self._packed_data = None
        self._packed_layout = None
        self._is_packed = False

    def __repr__(self) -> str:
        if self._is_packed:
            return (
                f"PackedValue(shape={self._unpacked_shape}, "
                f"packed_data={self._packed_data!r}, layout={self._packed_layout!r})"
            )
        return super().__repr__()
