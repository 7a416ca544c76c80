import numpy as np
import pytest
import scipy.sparse
import torch

import seqbatch.packing.packed_value
from seqbatch import MaskKind, NDArrayView, PackedLayout, PackedValue, StorageFormat, Value
from seqbatch.config import disable_automatic_unpacking, set_config


@pytest.fixture
def ragged_sequences() -> list[torch.Tensor]:
    """Two sequences of 2-element samples, lengths 3 and 5, as sample + (length,)."""
    return [
        torch.arange(6, dtype=torch.float32).reshape(3, 2).t(),
        torch.arange(100, 110, dtype=torch.float32).reshape(5, 2).t(),
    ]


@pytest.fixture
def ragged_value(ragged_sequences) -> PackedValue:
    return PackedValue.from_sequences((2,), ragged_sequences)


@pytest.fixture
def unpack_calls(monkeypatch) -> list:
    """Records each call to the packed-data conversion."""
    calls = []
    unpack = seqbatch.packing.packed_value.unpack_packed_data

    def counting_unpack(*args, **kwargs):
        calls.append(args)
        return unpack(*args, **kwargs)

    monkeypatch.setattr(seqbatch.packing.packed_value, "unpack_packed_data", counting_unpack)
    return calls


class TestPackedState:
    def test_metadata_without_unpacking(self, ragged_value, unpack_calls):
        assert ragged_value.is_packed
        assert ragged_value.shape == (2, 5, 2)
        assert ragged_value.dtype == torch.float32
        assert ragged_value.device == torch.device("cpu")
        assert ragged_value.storage_format == StorageFormat.DENSE
        assert not ragged_value.is_read_only
        assert ragged_value.masked_count() == 2
        assert ragged_value.sample_shape == (2,)
        assert ragged_value.packed_data.shape == (2, 10)
        assert "PackedValue" in repr(ragged_value)
        assert unpack_calls == []

    def test_unpacks_once(self, ragged_value, unpack_calls):
        data = ragged_value.data
        mask = ragged_value.mask
        ragged_value.unpack()

        assert len(unpack_calls) == 1
        assert data is ragged_value.data
        assert mask is ragged_value.mask
        assert not ragged_value.is_packed
        assert ragged_value.packed_data is None
        assert ragged_value.packed_layout is None

    def test_masked_count_survives_unpacking(self):
        value = PackedValue.from_sequences(
            (1,), [torch.ones(1, length) for length in (2, 3, 1)], num_streams=2
        )
        before = value.masked_count()

        value.unpack()

        assert before == 3
        assert value.masked_count() == before

    def test_packed_shape_mismatch(self):
        layout = PackedLayout.pack([2, 2])
        with pytest.raises(ValueError, match="does not match the packed shape"):
            PackedValue((2,), NDArrayView(torch.zeros(2, 5)), layout)


class TestUnpacking:
    def test_ragged_round_trip(self, ragged_value, ragged_sequences):
        sequences = ragged_value.to_sequences((2,))

        for sequence, expected in zip(sequences, ragged_sequences):
            np.testing.assert_array_equal(sequence, expected.t().numpy())
        assert ragged_value.mask.tensor[3, 0] == MaskKind.INVALID
        assert ragged_value.mask.tensor[0, 1] == MaskKind.SEQUENCE_BEGIN

    def test_shared_streams_round_trip(self):
        sequences = [
            torch.arange(length, dtype=torch.float64)[None] + 10 * i
            for i, length in enumerate((2, 3, 1))
        ]

        value = PackedValue.from_sequences((1,), sequences, num_streams=2)

        assert value.packed_data.shape == (1, 6)
        assert value.shape == (1, 3, 3)
        extracted = value.to_sequences((1,))
        for sequence, expected in zip(extracted, sequences):
            np.testing.assert_array_equal(sequence, expected.t().numpy())

    def test_sequence_continuing_from_before_window(self):
        layout = PackedLayout(2, 4)
        layout.add_sequence(0, 0, -1, 3)
        layout.add_gap(0, 3, 4)
        layout.add_sequence(1, 1, 0, 4)
        # column t * num_streams + s holds 10 * s + t
        packed = torch.tensor([[0.0, 10.0, 1.0, 11.0, 2.0, 12.0, 0.0, 13.0]])

        value = PackedValue((1,), NDArrayView(packed), layout)

        assert torch.equal(value.data.tensor[0, :, 0], torch.tensor([0.0, 1.0, 2.0, 0.0]))
        assert torch.equal(value.data.tensor[0, :, 1], torch.tensor([10.0, 11.0, 12.0, 13.0]))
        assert value.mask.tensor[0, 0] == MaskKind.VALID
        assert value.mask.tensor[3, 0] == MaskKind.INVALID
        assert value.mask.tensor[0, 1] == MaskKind.SEQUENCE_BEGIN
        assert value.masked_count() == 1

    def test_stream_aligned_layout_is_not_copied(self):
        sequences = [torch.full((2, 4), float(i)) for i in range(2)]
        value = PackedValue.from_sequences((2,), sequences)
        packed = value.packed_data

        data = value.data

        assert value.mask is None
        assert data.shape == (2, 4, 2)
        assert data.tensor.data_ptr() == packed.tensor.data_ptr()
        assert torch.all(data.tensor[..., 1] == 1.0)

    def test_read_only(self, ragged_sequences):
        value = PackedValue.from_sequences((2,), ragged_sequences, read_only=True)

        assert value.is_read_only
        value.unpack()
        assert value.is_read_only
        assert value.data.is_read_only

    def test_unsupported_dtype(self):
        value = PackedValue.from_sequences(
            (1,), [torch.ones(1, 2, dtype=torch.int64), torch.ones(1, 3, dtype=torch.int64)]
        )
        with pytest.raises(NotImplementedError):
            value.unpack()
        assert value.is_packed

    def test_mixed_dtypes_are_rejected(self):
        sequences = [
            torch.ones(1, 2, dtype=torch.float32),
            torch.full((1, 3), 0.1, dtype=torch.float64),
        ]
        with pytest.raises(ValueError, match="same data type"):
            PackedValue.from_sequences((1,), sequences)

    def test_shape_mismatch_after_unpacking(self, ragged_value, monkeypatch):
        monkeypatch.setattr(
            seqbatch.packing.packed_value,
            "unpack_packed_data",
            lambda *args: (NDArrayView(torch.zeros(2, 5, 3)), None),
        )

        with pytest.raises(RuntimeError, match="does not match the shape"):
            ragged_value.unpack()
        assert ragged_value.is_packed

    def test_sparse_packed_data(self):
        matrix = np.arange(12, dtype=np.float64).reshape(3, 4)
        packed = NDArrayView.from_scipy(scipy.sparse.csc_matrix(matrix), (3,))

        value = PackedValue((3,), packed, PackedLayout.pack([2, 2]))

        assert value.storage_format == StorageFormat.SPARSE_CSC
        assert value.data.storage_format == StorageFormat.DENSE
        assert torch.equal(value.data.tensor, torch.from_numpy(matrix).reshape(3, 2, 2))

    def test_sparse_single_stream_stays_sparse(self):
        matrix = np.arange(12, dtype=np.float64).reshape(3, 4)
        packed = NDArrayView.from_scipy(scipy.sparse.csc_matrix(matrix), (3,))

        value = PackedValue((3,), packed, PackedLayout.pack([4]))

        assert value.data.storage_format == StorageFormat.SPARSE_CSC
        assert value.shape == (3, 4, 1)
        assert torch.equal(value.data.to_dense().tensor, torch.from_numpy(matrix)[:, :, None])

    def test_copy_into_plain_value(self, ragged_value):
        target = Value.from_sequences((2,), [[0.0] * 6, [0.0] * 10])

        target.copy_from(ragged_value)

        assert torch.equal(target.data.tensor, ragged_value.data.tensor)
        assert target.masked_count() == 2

    @pytest.mark.cuda_if_available
    def test_device(self, ragged_sequences, device):
        value = PackedValue.from_sequences((2,), ragged_sequences, device=device)

        assert value.device.type == torch.device(device).type
        assert value.data.device.type == torch.device(device).type
        assert value.mask.device.type == torch.device(device).type


class TestAutomaticUnpacking:
    def test_disabled(self, ragged_value):
        with disable_automatic_unpacking():
            assert ragged_value.shape == (2, 5, 2)
            with pytest.raises(RuntimeError, match="Automatic unpacking"):
                ragged_value.data
            with pytest.raises(RuntimeError, match="Automatic unpacking"):
                ragged_value.unpack()
            assert ragged_value.is_packed

            ragged_value.unpack(automatic_unpacking=True)

        assert not ragged_value.is_packed

    def test_explicit_flag_overrides_config(self, ragged_value):
        with pytest.raises(RuntimeError, match="Automatic unpacking"):
            ragged_value.unpack(automatic_unpacking=False)

    def test_disabled_through_config(self, ragged_value):
        set_config({"automatic_unpacking": False})
        with pytest.raises(RuntimeError, match="Automatic unpacking"):
            ragged_value.mask

    def test_single_time_step_is_allowed(self):
        value = PackedValue.from_sequences((2,), [torch.ones(2, 1), torch.zeros(2, 1)])

        with disable_automatic_unpacking():
            assert value.data.shape == (2, 1, 2)

    def test_single_sequence_is_allowed(self):
        value = PackedValue.from_sequences((2,), [torch.ones(2, 3)])

        with disable_automatic_unpacking():
            assert value.data.shape == (2, 3, 1)
        assert value.mask is None

    def test_unpacked_value_ignores_setting(self, ragged_value):
        ragged_value.unpack()

        with disable_automatic_unpacking():
            assert ragged_value.data.shape == (2, 5, 2)
