from .layout import GAP_SEQUENCE_ID, PackedLayout, SequenceInfo
from .packed_value import PackedValue, pack_sequences, unpack_packed_data

__all__ = [
    "GAP_SEQUENCE_ID",
    "PackedLayout",
    "SequenceInfo",
    "PackedValue",
    "pack_sequences",
    "unpack_packed_data",
]
