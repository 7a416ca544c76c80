from dataclasses import dataclass
from typing import Optional, Sequence

import torch
from torch import Tensor

GAP_SEQUENCE_ID = -1


@dataclass(frozen=True)
class SequenceInfo:
    """Placement of one sequence (or gap) in a packed layout.

    `t_begin` may be negative and `t_end` may exceed the number of time steps
    when the sequence extends past the packed window; only the part inside the
    window is stored.
    """

    seq_id: int
    stream: int
    t_begin: int
    t_end: int

    @property
    def is_gap(self) -> bool:
        return self.seq_id == GAP_SEQUENCE_ID

    @property
    def starts_in_window(self) -> bool:
        return self.t_begin >= 0


class PackedLayout:
    """Describes how sequences are packed into parallel streams.

    Packed data stores time step `t` of stream `s` in column `t * num_streams + s`.
    Each stream holds any number of sequences and gaps back to back. The
    unpacked form has one column per (non-gap) sequence, in the order the
    sequences were added.
    """

    def __init__(self, num_streams: int, num_time_steps: int):
        if num_streams < 1 or num_time_steps < 1:
            raise ValueError(
                "A packed layout needs at least one stream and one time step, got "
                f"{num_streams} streams and {num_time_steps} time steps"
            )
        self._num_streams = num_streams
        self._num_time_steps = num_time_steps
        self._entries: list[SequenceInfo] = []

    @classmethod
    def pack(
        cls, sequence_lengths: Sequence[int], num_streams: Optional[int] = None
    ) -> "PackedLayout":
        """Packs sequences of the given lengths into streams.

        Each sequence goes to the stream that currently ends earliest. With the
        default of one stream per sequence, every sequence gets its own stream.
        Unused stream tails are recorded as gaps.
        """
        lengths = [int(length) for length in sequence_lengths]
        if any(length < 1 for length in lengths):
            raise ValueError(f"Packed sequences must be non-empty, got lengths {lengths}")
        if num_streams is None:
            num_streams = max(len(lengths), 1)

        stream_ends = [0] * num_streams
        placements = []
        for length in lengths:
            stream = min(range(num_streams), key=lambda s: stream_ends[s])
            placements.append((stream, stream_ends[stream], stream_ends[stream] + length))
            stream_ends[stream] += length

        layout = cls(num_streams, max(stream_ends + [1]))
        for seq_id, (stream, t_begin, t_end) in enumerate(placements):
            layout.add_sequence(seq_id, stream, t_begin, t_end)
        for stream, end in enumerate(stream_ends):
            if end < layout.num_time_steps:
                layout.add_gap(stream, end, layout.num_time_steps)
        return layout

    @property
    def num_streams(self) -> int:
        return self._num_streams

    @property
    def num_time_steps(self) -> int:
        return self._num_time_steps

    @property
    def entries(self) -> list[SequenceInfo]:
        return list(self._entries)

    @property
    def sequences(self) -> list[SequenceInfo]:
        return [entry for entry in self._entries if not entry.is_gap]

    @property
    def num_sequences(self) -> int:
        return len(self.sequences)

    def add_sequence(self, seq_id: int, stream: int, t_begin: int, t_end: int) -> SequenceInfo:
        if seq_id == GAP_SEQUENCE_ID:
            raise ValueError("Use add_gap to add gaps to a packed layout")
        return self._add(SequenceInfo(seq_id, stream, t_begin, t_end))

    def add_gap(self, stream: int, t_begin: int, t_end: int) -> SequenceInfo:
        return self._add(SequenceInfo(GAP_SEQUENCE_ID, stream, t_begin, t_end))

    def _add(self, entry: SequenceInfo) -> SequenceInfo:
        if not 0 <= entry.stream < self._num_streams:
            raise ValueError(
                f"Stream {entry.stream} is out of range for {self._num_streams} streams"
            )
        if entry.t_end <= entry.t_begin:
            raise ValueError(f"Empty time range [{entry.t_begin}, {entry.t_end})")
        if entry.t_end <= 0 or entry.t_begin >= self._num_time_steps:
            raise ValueError(
                f"Time range [{entry.t_begin}, {entry.t_end}) does not intersect the "
                f"packed window of {self._num_time_steps} time steps"
            )
        for other in self._entries:
            if (
                other.stream == entry.stream
                and other.t_begin < entry.t_end
                and entry.t_begin < other.t_end
            ):
                raise ValueError(f"{entry} overlaps {other} in the same stream")
            if not entry.is_gap and other.seq_id == entry.seq_id:
                raise ValueError(f"Duplicate sequence id {entry.seq_id}")
        self._entries.append(entry)
        return entry

    def window(self, entry: SequenceInfo) -> tuple[int, int]:
        """Returns the part [begin, end) of `entry` inside the packed window."""
        return max(entry.t_begin, 0), min(entry.t_end, self._num_time_steps)

    def sequence_lengths(self) -> list[int]:
        return [end - begin for begin, end in map(self.window, self.sequences)]

    def sequence_start_flags(self) -> list[bool]:
        return [entry.starts_in_window for entry in self.sequences]

    def column_indices(self, entry: SequenceInfo, device: Optional[torch.device] = None) -> Tensor:
        begin, end = self.window(entry)
        steps = torch.arange(begin, end, dtype=torch.long, device=device)
        return steps * self._num_streams + entry.stream

    def is_stream_aligned(self) -> bool:
        """True if sequence i fills stream i over the whole window.

        Unpacking such a layout is a pure reshape of the packed data.
        """
        sequences = self.sequences
        if len(sequences) != self._num_streams:
            return False
        return all(
            entry.stream == i and entry.t_begin == 0 and entry.t_end >= self._num_time_steps
            for i, entry in enumerate(sequences)
        )

    def __repr__(self) -> str:
        return (
            f"PackedLayout(num_streams={self._num_streams}, "
            f"num_time_steps={self._num_time_steps}, num_sequences={self.num_sequences})"
        )
