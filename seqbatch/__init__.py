from .utils import NDArrayView, StorageFormat, NDMask, MaskKind
from .batching import create_mask
from .value import Value
from .packing import PackedLayout, SequenceInfo, PackedValue
from .config import (
    BatchingConfig,
    register_configs,
    get_config,
    set_config,
    disable_automatic_unpacking,
)

__all__ = [
    "NDArrayView",
    "StorageFormat",
    "NDMask",
    "MaskKind",
    "create_mask",
    "Value",
    "PackedLayout",
    "SequenceInfo",
    "PackedValue",
    "BatchingConfig",
    "register_configs",
    "get_config",
    "set_config",
    "disable_automatic_unpacking",
]
