from typing import Optional, Sequence

from ..utils.mask import NDMask
from ..utils.ndarray_view import DeviceLike


def create_mask(
    sequence_lengths: Sequence[int],
    sequence_start_flags: Optional[Sequence[bool]] = None,
    device: DeviceLike = None,
    max_length: Optional[int] = None,
) -> Optional[NDMask]:
    """Creates the validity mask for a batch of sequences with the given lengths.

    No mask is needed when every sequence starts a new logical sequence and all
    have the same length; None is returned in that case.

    Args:
        sequence_lengths (Sequence[int]): Length of each sequence.
        sequence_start_flags (Sequence[bool], optional): Whether each sequence's
            first time step begins a new sequence. Empty or None means all True.
        device (DeviceLike, optional): Device of the returned mask.
        max_length (int, optional): Length of the mask's time axis. Defaults to
            the longest sequence length.

    Returns:
        Optional[NDMask]: Mask of shape (max_length, num_sequences), or None.
    """
    lengths = [int(length) for length in sequence_lengths]
    num_sequences = len(lengths)

    if sequence_start_flags and len(sequence_start_flags) != num_sequences:
        raise ValueError(
            f"The number of sequence start flags ({len(sequence_start_flags)}) "
            f"does not match the number of sequences ({num_sequences})"
        )
    starts = list(sequence_start_flags) if sequence_start_flags else [True] * num_sequences

    longest = max(lengths, default=0)
    if max_length is None:
        max_length = longest
    elif max_length < longest:
        raise ValueError(
            f"max_length {max_length} is shorter than the longest sequence ({longest})"
        )

    needs_mask = not all(starts) or any(length != max_length for length in lengths)
    if not needs_mask:
        return None

    mask = NDMask((max_length, num_sequences), device)
    for i, (length, start) in enumerate(zip(lengths, starts)):
        if start and length > 0:
            mask.mark_sequence_begin((0, i))
        mask.invalidate_section((length, i), (None, 1))
    return mask
