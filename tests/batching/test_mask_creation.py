import pytest
import torch

from seqbatch.batching.mask_creation import create_mask
from seqbatch.utils.mask import MaskKind


class TestCreateMask:
    def test_equal_lengths_need_no_mask(self):
        assert create_mask([4, 4, 4]) is None
        assert create_mask([4, 4, 4], []) is None
        assert create_mask([4, 4], [True, True]) is None

    def test_unequal_lengths(self):
        mask = create_mask([3, 5])

        assert mask.shape == (5, 2)
        assert mask.tensor[3, 0] == MaskKind.INVALID
        assert mask.tensor[4, 0] == MaskKind.INVALID
        assert mask.valid()[:, 1].all()
        assert mask.tensor[0, 0] == MaskKind.SEQUENCE_BEGIN
        assert mask.tensor[0, 1] == MaskKind.SEQUENCE_BEGIN
        assert mask.masked_count() == 2

    def test_false_start_flag_forces_mask(self):
        mask = create_mask([2, 2], [True, False])

        assert mask is not None
        assert mask.masked_count() == 0
        assert mask.tensor[0, 0] == MaskKind.SEQUENCE_BEGIN
        assert mask.tensor[0, 1] == MaskKind.VALID

    def test_start_flag_count_mismatch(self):
        with pytest.raises(ValueError, match="start flags"):
            create_mask([2, 3], [True])

    def test_explicit_max_length(self):
        assert create_mask([3, 3], max_length=3) is None

        mask = create_mask([3, 3], max_length=4)
        assert mask.shape == (4, 2)
        assert mask.masked_count() == 2

        with pytest.raises(ValueError, match="shorter than the longest"):
            create_mask([3, 5], max_length=4)

    def test_zero_length_sequence(self):
        mask = create_mask([0, 2])
        assert torch.all(mask.tensor[:, 0] == MaskKind.INVALID)

    @pytest.mark.cuda_if_available
    def test_mask_device(self, device):
        mask = create_mask([1, 2], device=device)
        assert mask.device.type == torch.device(device).type
