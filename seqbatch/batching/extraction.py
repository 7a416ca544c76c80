import logging
import math
from typing import Callable, MutableSequence, Optional, Sequence, Union

import numpy as np
import torch
from torch import Tensor

from ..utils.mask import NDMask
from ..utils.ndarray_view import HOST, NDArrayView, same_device

_logger = logging.getLogger(__name__)

OutputBuffer = Union[np.ndarray, Tensor, MutableSequence]


@torch.jit.script
def find_valid_runs(mask_column: Tensor) -> tuple[Tensor, Tensor]:
    """Finds the maximal runs of valid cells in one column of a mask.

    Args:
        mask_column (Tensor): 1D tensor of MaskKind values for one sequence.

    Returns:
        starts (Tensor): Start index of each run of non-INVALID cells.
        ends (Tensor): Exclusive end index of each run.
    """
    # MaskKind.INVALID == 0
    valid = (mask_column != 0).to(torch.int8)
    zero = torch.zeros(1, dtype=torch.int8, device=mask_column.device)
    edges = torch.cat([zero, valid, zero])
    changes = edges[1:] - edges[:-1]
    starts = torch.nonzero(changes == 1).flatten()
    ends = torch.nonzero(changes == -1).flatten()
    return starts, ends


@torch.jit.script
def one_hot_indices(samples: Tensor) -> tuple[Tensor, Tensor]:
    """Locates the non-zero entry of each sample.

    Args:
        samples (Tensor): Tensor of shape (n_samples, sample_size).

    Returns:
        counts (Tensor): Number of non-zero entries of each sample.
        indices (Tensor): Position of the first non-zero entry of each sample
            (0 for samples without one).
    """
    nonzero = samples != 0
    counts = nonzero.sum(-1)
    indices = nonzero.to(torch.uint8).argmax(-1)
    return counts, indices


def _write(dest: OutputBuffer, start: int, values: Tensor):
    stop = start + values.numel()
    if isinstance(dest, np.ndarray):
        dest[start:stop] = values.numpy()
    elif isinstance(dest, Tensor):
        dest[start:stop] = values.to(dest.device)
    else:
        dest[start:stop] = values.tolist()


def direct_copy(
    samples: Tensor, dest: OutputBuffer, dest_sample_start: int, sample_size: int
) -> int:
    """Copies `samples` of shape (count, sample_size) into `dest` after
    `dest_sample_start` samples. Returns the new number of samples in `dest`."""
    count = samples.shape[0]
    if (dest_sample_start + count) * sample_size > len(dest):
        raise RuntimeError("The output buffer is too small")
    _write(dest, dest_sample_start * sample_size, samples.reshape(-1))
    return dest_sample_start + count


def copy_dense_to_one_hot(
    samples: Tensor, dest: OutputBuffer, dest_sample_start: int, sample_size: int
) -> int:
    """Decodes one-hot `samples` to indices written into `dest`.

    Samples before the first one that fails to decode are written before the
    error is raised.
    """
    count = samples.shape[0]
    counts, indices = one_hot_indices(samples)
    bad = torch.nonzero(counts != 1).flatten()
    first_bad = int(bad[0]) if bad.numel() > 0 else count
    room = max(len(dest) - dest_sample_start, 0)

    n_written = min(first_bad, room, count)
    _write(dest, dest_sample_start, indices[:n_written])
    if n_written == count:
        return dest_sample_start + count

    if first_bad <= room and first_bad < count:
        if int(counts[first_bad]) == 0:
            raise RuntimeError(
                "Cannot convert to one-hot vector: the sample does not have any "
                "non-zero value"
            )
        raise RuntimeError(
            "Cannot convert to one-hot vector: more than one non-zero value in the sample"
        )
    raise RuntimeError("The output buffer is too small")


def _check_direct_copy_dtype(dest: OutputBuffer, dtype: torch.dtype):
    if isinstance(dest, np.ndarray):
        if dest.dtype != numpy_dtype(dtype):
            raise RuntimeError(
                f"Source and destination must be the same data type, got {dtype} "
                f"and {dest.dtype}"
            )
    elif isinstance(dest, Tensor) and dest.dtype != dtype:
        raise RuntimeError(
            f"Source and destination must be the same data type, got {dtype} "
            f"and {dest.dtype}"
        )


def _check_one_hot_dtype(dest: OutputBuffer, vocabulary_size: int):
    if isinstance(dest, np.ndarray):
        if dest.dtype.kind != "u":
            raise RuntimeError(
                f"The destination data type must be an unsigned index type, got {dest.dtype}"
            )
        max_index = int(np.iinfo(dest.dtype).max)
    elif isinstance(dest, Tensor):
        if dest.dtype.is_floating_point or dest.dtype.is_complex or dest.dtype == torch.bool:
            raise RuntimeError(
                f"The destination data type must be an integer index type, got {dest.dtype}"
            )
        max_index = int(torch.iinfo(dest.dtype).max)
    else:
        return
    if max_index < vocabulary_size - 1:
        raise RuntimeError(
            f"The destination data type {dest.dtype} cannot hold indices up to "
            f"{vocabulary_size - 1} of vocabulary size {vocabulary_size}"
        )


def numpy_dtype(dtype: torch.dtype) -> np.dtype:
    return torch.empty(0, dtype=dtype).numpy().dtype


def batch_dims(value_shape: Sequence[int], sample_shape: Sequence[int]) -> tuple[int, int]:
    """Returns (num_sequences, max_length) of a batch with the given sample shape.

    Raises:
        RuntimeError: If the sample shape does not match the value shape.
    """
    value_shape = tuple(value_shape)
    sample_shape = tuple(sample_shape)
    value_rank = len(value_shape)
    sample_rank = len(sample_shape)
    if (
        value_rank < sample_rank + 1
        or value_rank > sample_rank + 2
        or value_shape[:sample_rank] != sample_shape
    ):
        raise RuntimeError(
            f"The sample shape {sample_shape} does not match the value shape {value_shape}"
        )
    if value_rank == sample_rank + 1:
        # no batch axis, only the sequence axis
        return 1, value_shape[-1]
    return value_shape[-1], value_shape[-2]


def copy_to_sequences(
    data: NDArrayView,
    mask: Optional[NDMask],
    sample_shape: Sequence[int],
    sequences: MutableSequence[OutputBuffer],
    sequence_lengths: MutableSequence[int],
    one_hot: bool = False,
):
    """Copies each sequence of a padded batch into its own output buffer.

    Padding cells, as marked INVALID by `mask`, are skipped. Every maximal run
    of valid cells of a sequence is appended to that sequence's buffer, so
    masks with interior invalid runs are compacted as well.

    Args:
        data (NDArrayView): Batch data of shape sample_shape + (max_length,
            num_sequences) or sample_shape + (length,).
        mask (NDMask, optional): Validity mask of the batch.
        sample_shape (Sequence[int]): Shape of one sample.
        sequences (MutableSequence[OutputBuffer]): One pre-sized flat buffer per
            sequence. With `one_hot`, each receives one index per sample,
            otherwise the raw sample values back to back.
        sequence_lengths (MutableSequence[int]): Receives the number of samples
            written for each sequence; entries past the number of sequences are
            set to 0.
        one_hot (bool): Decode each sample from a one-hot vector to its index.

    Raises:
        RuntimeError: If the shapes are incompatible, a buffer is too small, a
            destination has the wrong data type, or a sample is not one-hot.
    """
    sample_shape = tuple(int(d) for d in sample_shape)
    num_sequences, max_length = batch_dims(data.shape, sample_shape)
    sample_size = math.prod(sample_shape)

    if len(sequences) < num_sequences:
        raise RuntimeError(
            f"The size of the output buffer ({len(sequences)}) is too small for "
            f"{num_sequences} sequences"
        )
    if len(sequence_lengths) < num_sequences:
        raise RuntimeError(
            f"The size of sequence_lengths ({len(sequence_lengths)}) does not match "
            f"the number of sequences ({num_sequences})"
        )
    for i in range(num_sequences, len(sequence_lengths)):
        sequence_lengths[i] = 0

    copy_fn: Callable[[Tensor, OutputBuffer, int, int], int]
    if one_hot:
        copy_fn = copy_dense_to_one_hot
        for dest in sequences[:num_sequences]:
            _check_one_hot_dtype(dest, sample_size)
    else:
        copy_fn = direct_copy
        for dest in sequences[:num_sequences]:
            _check_direct_copy_dtype(dest, data.dtype)

    if data.is_sparse or not same_device(data.device, HOST):
        _logger.debug("Staging %s data of shape %s on host", data.storage_format.value, data.shape)
        host_data = data.to_dense(HOST)
    else:
        host_data = data
    host_mask = None
    if mask is not None:
        host_mask = mask if same_device(mask.device, HOST) else mask.deep_clone(HOST)

    # (sample_size, max_length, num_sequences) -> per sequence (max_length, sample_size)
    batch = host_data.tensor.reshape(sample_size, max_length, num_sequences)
    mask_tensor = None
    if host_mask is not None:
        mask_tensor = host_mask.tensor.reshape(max_length, num_sequences)

    for i in range(num_sequences):
        samples = batch[:, :, i].t()
        if mask_tensor is None:
            runs = [(0, max_length)]
        else:
            starts, ends = find_valid_runs(mask_tensor[:, i])
            runs = zip(starts.tolist(), ends.tolist())

        dest_count = 0
        for start, end in runs:
            if end > start:
                dest_count = copy_fn(samples[start:end], sequences[i], dest_count, sample_size)
        sequence_lengths[i] = dest_count
