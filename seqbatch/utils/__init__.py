from .ndarray_view import NDArrayView, StorageFormat, SUPPORTED_DTYPES, require_supported_dtype
from .mask import NDMask, MaskKind

__all__ = [
    "NDArrayView",
    "StorageFormat",
    "SUPPORTED_DTYPES",
    "require_supported_dtype",
    "NDMask",
    "MaskKind",
]
