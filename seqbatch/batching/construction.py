import logging
import math
from typing import Any, Optional, Sequence

import numpy as np
import scipy.sparse
import torch
from torch import Tensor

from ..config.runtime import default_device, default_dtype
from ..utils.mask import NDMask
from ..utils.ndarray_view import (
    HOST,
    DeviceLike,
    NDArrayView,
    StorageFormat,
    as_device,
    require_supported_dtype,
    same_device,
)
from .mask_creation import create_mask

_logger = logging.getLogger(__name__)


def _normalized_sequence_shape(sample_shape: tuple, sequence: NDArrayView) -> tuple:
    shape = sequence.shape
    # scalar samples may be given without their leading unit axis
    if (
        not sequence.is_sparse
        and sample_shape == (1,)
        and (len(shape) == 0 or shape[0] != 1)
    ):
        shape = (1,) + shape
    return shape


def sequence_lengths(sample_shape: Sequence[int], sequences: Sequence[NDArrayView]) -> list[int]:
    """Validates `sequences` against `sample_shape` and returns their lengths.

    Each sequence must have the sample shape as its leading axes, followed by at
    most one time axis. All sequences must share data type, storage format and
    device.

    Raises:
        ValueError: On any mismatch, or if `sequences` is empty.
    """
    sample_shape = tuple(int(d) for d in sample_shape)
    sample_rank = len(sample_shape)
    if len(sequences) == 0:
        raise ValueError("The number of sequences is 0")

    dtype = sequences[0].dtype
    storage_format = sequences[0].storage_format
    device = sequences[0].device
    lengths = []
    for i, sequence in enumerate(sequences):
        if sequence.dtype != dtype:
            raise ValueError(
                "The data for all sequences must have the same data type, got "
                f"{sequence.dtype} for sequence {i} and {dtype} for sequence 0"
            )
        if sequence.storage_format != storage_format:
            raise ValueError("All sequences must have the same storage format")
        if not same_device(sequence.device, device):
            raise ValueError(
                f"All sequences must reside on the same device, got {sequence.device} "
                f"for sequence {i} and {device} for sequence 0"
            )

        shape = _normalized_sequence_shape(sample_shape, sequence)
        if (
            len(shape) < sample_rank
            or len(shape) > sample_rank + 1
            or shape[:sample_rank] != sample_shape
        ):
            raise ValueError(
                f"The shape of sequence {i} {sequence.shape} is not compatible "
                f"with the sample shape {sample_shape}"
            )
        lengths.append(math.prod(shape[sample_rank:]))
    return lengths


def pad_dense_sequences(
    sample_shape: Sequence[int],
    sequences: Sequence[NDArrayView],
    lengths: Sequence[int],
    max_length: int,
) -> NDArrayView:
    """Copies dense sequences into a zero-filled host batch.

    Returns:
        NDArrayView: Host view of shape sample_shape + (max_length, num_sequences)
            with sequence i occupying [..., :lengths[i], i].
    """
    sample_shape = tuple(sample_shape)
    dtype = sequences[0].dtype
    require_supported_dtype(dtype, "Dense sequence padding")

    batch = torch.zeros(sample_shape + (max_length, len(sequences)), dtype=dtype, device=HOST)
    for i, (sequence, length) in enumerate(zip(sequences, lengths)):
        batch[..., :length, i] = sequence.tensor.reshape(sample_shape + (length,)).to(HOST)
    return NDArrayView(batch)


def _append_sparse_sequence(
    sequence: NDArrayView,
    n_rows: int,
    max_length: int,
    nnz_so_far: int,
    col_starts: list[Tensor],
    row_indices: list[Tensor],
    values: list[Tensor],
) -> int:
    csc = sequence.tensor.to(HOST)
    if csc.shape[0] != n_rows:
        raise ValueError(
            f"Sparse sequence has {csc.shape[0]} rows, expected {n_rows}"
        )
    n_cols = csc.shape[1]
    seq_col_starts = csc.ccol_indices().to(torch.long)
    first = int(seq_col_starts[0])
    seq_nnz = int(seq_col_starts[n_cols]) - first

    row_indices.append(csc.row_indices()[first : first + seq_nnz].to(torch.long))
    values.append(csc.values()[first : first + seq_nnz])

    # padded columns repeat the final column start, i.e. hold no non-zeros
    padded = torch.full((max_length,), nnz_so_far + seq_nnz, dtype=torch.long)
    padded[:n_cols] = seq_col_starts[:n_cols] - first + nnz_so_far
    col_starts.append(padded)
    return nnz_so_far + seq_nnz


def concat_sparse_sequences(
    sample_shape: Sequence[int],
    sequences: Sequence[NDArrayView],
    max_length: int,
) -> NDArrayView:
    """Concatenates CSC sequences into a host CSC batch padded to `max_length`.

    Column starts of each sequence are rebased onto the running non-zero count,
    and the unused trailing columns of shorter sequences repeat the last column
    start so they hold no non-zeros.
    """
    sample_shape = tuple(sample_shape)
    if sequences[0].storage_format != StorageFormat.SPARSE_CSC:
        raise RuntimeError("Only SPARSE_CSC sparse data is supported for batching")
    dtype = sequences[0].dtype
    require_supported_dtype(dtype, "Sparse sequence concatenation")

    col_starts: list[Tensor] = []
    row_indices: list[Tensor] = []
    values: list[Tensor] = []
    nnz = 0
    for sequence in sequences:
        nnz = _append_sparse_sequence(
            sequence, sample_shape[0], max_length, nnz, col_starts, row_indices, values
        )
    col_starts.append(torch.tensor([nnz], dtype=torch.long))

    return NDArrayView.from_sparse_csc(
        sample_shape + (max_length, len(sequences)),
        torch.cat(col_starts),
        torch.cat(row_indices),
        torch.cat(values).to(dtype),
    )


def place_on_device(
    data: NDArrayView, device: torch.device, read_only: bool
) -> NDArrayView:
    """Returns `data` on `device`, aliasing instead of copying when possible."""
    if same_device(device, data.device):
        if read_only:
            return data.alias(read_only=True)
        return data
    _logger.debug("Transferring batch of shape %s from %s to %s", data.shape, data.device, device)
    return data.deep_clone(device, read_only)


def create_batch_from_views(
    sample_shape: Sequence[int],
    sequences: Sequence[NDArrayView],
    sequence_start_flags: Optional[Sequence[bool]] = None,
    device: DeviceLike = None,
    read_only: bool = False,
    create_new_copy: bool = False,
) -> tuple[NDArrayView, Optional[NDMask]]:
    """Builds padded batch data and its mask from per-sequence views.

    Args:
        sample_shape (Sequence[int]): Shape of one sample.
        sequences (Sequence[NDArrayView]): Sequence data, each of shape
            sample_shape + (length,).
        sequence_start_flags (Sequence[bool], optional): Per-sequence start flags,
            all True if empty or None.
        device (DeviceLike, optional): Target device. Defaults to the configured
            default device.
        read_only (bool): Whether the returned data is read-only.
        create_new_copy (bool): If True, a single sequence is deep-copied rather
            than used as-is.

    Returns:
        data (NDArrayView): Batch of shape sample_shape + (max_length, num_sequences),
            or sample_shape + (length,) for a single sequence without a mask.
        mask (Optional[NDMask]): Validity mask, None if no sequence is padded
            and all sequences start new sequences.
    """
    sample_shape = tuple(int(d) for d in sample_shape)
    device = as_device(device) or default_device()
    sequences = [as_view(sequence) for sequence in sequences]

    lengths = sequence_lengths(sample_shape, sequences)
    max_length = max(lengths)

    is_sparse = sequences[0].is_sparse
    if is_sparse and sample_shape[0] != math.prod(sample_shape):
        raise ValueError(
            "The sample shape's leading axis dimensionality must equal the total "
            f"size of the sample for sparse data, got {sample_shape}"
        )

    mask = create_mask(lengths, sequence_start_flags, device)

    if len(sequences) == 1:
        data = sequences[0].deep_clone() if create_new_copy else sequences[0]
        target_shape = sample_shape + (lengths[0],)
        if mask is not None:
            target_shape = target_shape + (1,)
        if data.shape != target_shape:
            data = data.reshaped(target_shape)
    else:
        _logger.debug(
            "Assembling %s batch of %d sequences with max length %d on host",
            "sparse" if is_sparse else "dense",
            len(sequences),
            max_length,
        )
        if is_sparse:
            data = concat_sparse_sequences(sample_shape, sequences, max_length)
        else:
            data = pad_dense_sequences(sample_shape, sequences, lengths, max_length)

    return place_on_device(data, device, read_only), mask


def create_batch_from_buffers(
    sample_shape: Sequence[int],
    sequences: Sequence[Any],
    sequence_start_flags: Optional[Sequence[bool]] = None,
    device: DeviceLike = None,
    read_only: bool = False,
    dtype: Optional[torch.dtype] = None,
) -> tuple[NDArrayView, Optional[NDMask]]:
    """Builds a padded batch from flat buffers of back-to-back samples."""
    views = [
        as_view(sequence)
        if isinstance(sequence, NDArrayView) or scipy.sparse.issparse(sequence)
        else NDArrayView.from_buffer(sequence, sample_shape, dtype)
        for sequence in sequences
    ]
    return create_batch_from_views(
        sample_shape, views, sequence_start_flags, device, read_only, create_new_copy=True
    )


def one_hot_sequences_to_csc(
    vocabulary_size: int,
    sequences: Sequence[Sequence[int]],
    max_length: int,
    dtype: torch.dtype,
) -> NDArrayView:
    """Builds a host CSC batch with one unit non-zero per real time step.

    Returns:
        NDArrayView: Sparse view of shape
            (vocabulary_size, max_length, num_sequences).
    """
    num_sequences = len(sequences)
    col_starts = torch.empty(max_length * num_sequences + 1, dtype=torch.long)
    row_indices = []
    nnz = 0
    steps = torch.arange(max_length, dtype=torch.long)
    for i, sequence in enumerate(sequences):
        indices = torch.from_numpy(np.asarray(sequence, dtype=np.int64).reshape(-1))
        if indices.numel() > 0 and (
            int(indices.max()) >= vocabulary_size or int(indices.min()) < 0
        ):
            raise ValueError(
                f"One-hot data of sequence {i} exceeds the vocabulary size "
                f"{vocabulary_size}"
            )
        length = indices.numel()
        col_starts[i * max_length : (i + 1) * max_length] = nnz + steps.clamp_max(length)
        row_indices.append(indices)
        nnz += length
    col_starts[-1] = nnz

    return NDArrayView.from_sparse_csc(
        (vocabulary_size, max_length, num_sequences),
        col_starts,
        torch.cat(row_indices),
        torch.ones(nnz, dtype=dtype),
    )


def create_one_hot_batch(
    vocabulary_size: int,
    sequences: Sequence[Sequence[int]],
    sequence_start_flags: Optional[Sequence[bool]] = None,
    device: DeviceLike = None,
    read_only: bool = False,
    dtype: Optional[torch.dtype] = None,
) -> tuple[NDArrayView, Optional[NDMask]]:
    """Builds a sparse one-hot batch from per-sequence lists of indices."""
    if len(sequences) == 0:
        raise ValueError("The number of sequences is 0")
    if vocabulary_size <= 0:
        raise ValueError(f"Vocabulary size must be positive, got {vocabulary_size}")
    device = as_device(device) or default_device()
    dtype = dtype or default_dtype()
    require_supported_dtype(dtype, "One-hot batch construction")

    lengths = [len(sequence) for sequence in sequences]
    max_length = max(lengths)
    mask = create_mask(lengths, sequence_start_flags, device)

    data = one_hot_sequences_to_csc(vocabulary_size, sequences, max_length, dtype)
    _logger.debug(
        "Built one-hot batch of %d sequences over vocabulary of %d (%d non-zeros)",
        len(sequences),
        vocabulary_size,
        data.nnz(),
    )
    return place_on_device(data, device, read_only), mask


def as_view(sequence: Any) -> NDArrayView:
    if isinstance(sequence, NDArrayView):
        return sequence
    if scipy.sparse.issparse(sequence):
        return NDArrayView.from_scipy(sequence)
    raise TypeError(
        f"Expected an NDArrayView or scipy sparse matrix, got {type(sequence).__name__}"
    )
