import enum
from typing import Optional, Sequence

import torch
from torch import Tensor

from .ndarray_view import DeviceLike, HOST, as_device, same_device


class MaskKind(enum.IntEnum):
    INVALID = 0
    VALID = 1
    SEQUENCE_BEGIN = 2


class NDMask:
    """Per-(time step, sequence) validity grid of a batch.

    Cells hold MaskKind values in an int8 tensor. A freshly created mask is
    entirely VALID. Like NDArrayView, aliases share the underlying tensor.
    """

    def __init__(self, shape: Sequence[int], device: DeviceLike = None):
        shape = tuple(int(d) for d in shape)
        if any(d < 0 for d in shape):
            raise ValueError(f"Mask dimensions must be non-negative, got {shape}")
        self._tensor = torch.full(
            shape, int(MaskKind.VALID), dtype=torch.int8, device=as_device(device) or HOST
        )

    @classmethod
    def _wrap(cls, tensor: Tensor) -> "NDMask":
        mask = cls.__new__(cls)
        mask._tensor = tensor
        return mask

    @property
    def tensor(self) -> Tensor:
        return self._tensor

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self._tensor.shape)

    @property
    def rank(self) -> int:
        return self._tensor.ndim

    @property
    def device(self) -> torch.device:
        return self._tensor.device

    def _section(self, offset: Sequence[int], section_shape: Optional[Sequence[Optional[int]]]):
        if len(offset) != self.rank:
            raise ValueError(
                f"Offset {tuple(offset)} has rank {len(offset)}, mask has rank {self.rank}"
            )
        if section_shape is None:
            section_shape = [None] * self.rank
        if len(section_shape) != self.rank:
            raise ValueError(
                f"Section shape {tuple(section_shape)} has rank {len(section_shape)}, "
                f"mask has rank {self.rank}"
            )
        index = []
        for start, extent, dim in zip(offset, section_shape, self.shape):
            if start < 0 or start > dim:
                raise ValueError(f"Offset {tuple(offset)} is out of bounds for mask {self.shape}")
            stop = dim if extent is None else start + extent
            if stop > dim:
                raise ValueError(
                    f"Section at {tuple(offset)} of shape {tuple(section_shape)} "
                    f"exceeds mask shape {self.shape}"
                )
            index.append(slice(start, stop))
        return tuple(index)

    def mark_section(
        self,
        offset: Sequence[int],
        section_shape: Optional[Sequence[Optional[int]]],
        kind: MaskKind,
    ):
        """Sets every cell of a section to `kind`.

        A section dimension of None extends to the end of that axis.
        """
        self._tensor[self._section(offset, section_shape)] = int(kind)

    def invalidate_section(
        self, offset: Sequence[int], section_shape: Optional[Sequence[Optional[int]]] = None
    ):
        self.mark_section(offset, section_shape, MaskKind.INVALID)

    def mark_sequence_begin(self, offset: Sequence[int]):
        self.mark_section(offset, [1] * self.rank, MaskKind.SEQUENCE_BEGIN)

    def clear(self):
        self._tensor.fill_(int(MaskKind.VALID))

    def masked_count(self) -> int:
        return int((self._tensor == int(MaskKind.INVALID)).sum())

    def valid(self) -> Tensor:
        """Boolean tensor that is True at non-padding cells."""
        return self._tensor != int(MaskKind.INVALID)

    def deep_clone(self, device: DeviceLike = None) -> "NDMask":
        device = as_device(device) or self.device
        if same_device(device, self.device):
            return NDMask._wrap(self._tensor.clone())
        return NDMask._wrap(self._tensor.to(device))

    def alias(self) -> "NDMask":
        return NDMask._wrap(self._tensor)

    def copy_from(self, source: "NDMask"):
        if source.shape != self.shape:
            raise ValueError(
                f"Cannot copy a mask of shape {source.shape} into a mask of "
                f"shape {self.shape}"
            )
        self._tensor.copy_(source.tensor)

    def __repr__(self) -> str:
        return f"NDMask(shape={self.shape}, device={self.device}, masked={self.masked_count()})"
