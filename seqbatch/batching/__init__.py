from .mask_creation import create_mask
from .construction import (
    sequence_lengths,
    pad_dense_sequences,
    concat_sparse_sequences,
    one_hot_sequences_to_csc,
    create_batch_from_views,
    create_batch_from_buffers,
    create_one_hot_batch,
)
from .extraction import find_valid_runs, copy_to_sequences


__all__ = [
    "create_mask",
    "sequence_lengths",
    "pad_dense_sequences",
    "concat_sparse_sequences",
    "one_hot_sequences_to_csc",
    "create_batch_from_views",
    "create_batch_from_buffers",
    "create_one_hot_batch",
    "find_valid_runs",
    "copy_to_sequences",
]
