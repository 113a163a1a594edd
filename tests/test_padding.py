"""Tests for dynamic padding and unpadding."""

import numpy as np

from unimodel_core.serving.padding import pad_batch, unpad


class TestPadBatch:
    """Test pad_batch."""

    def test_pads_numeric_lists_to_longest(self):
        """Test shorter sequences are right-padded with pad_value."""
        inputs, lengths, types = pad_batch([[1, 2, 3], [4]], pad_value=-1)

        assert lengths == [3, 1]
        assert types == [list, list]
        assert inputs[0].tolist() == [1, 2, 3]
        assert inputs[1].tolist() == [4, -1, -1]

    def test_non_sequences_pass_through(self):
        """Test strings, dicts and scalars are not padded."""
        payloads = ["hello", {"a": 1}, 7, [1.0, 2.0]]
        inputs, lengths, _ = pad_batch(payloads)

        assert inputs[:3] == ["hello", {"a": 1}, 7]
        assert lengths == [None, None, None, 2]

    def test_string_lists_and_ragged_nesting_pass_through(self):
        """Test non-numeric and ragged sequences are left alone."""
        payloads = [["a", "b"], [[1, 2], [3]]]
        inputs, lengths, _ = pad_batch(payloads)
        assert inputs == payloads
        assert lengths == [None, None]

    def test_pads_first_axis_of_matrices(self):
        """Test 2-D arrays are padded along axis 0 only."""
        a = np.ones((2, 3))
        b = np.ones((4, 3))
        inputs, lengths, types = pad_batch([a, b])

        assert inputs[0].shape == (4, 3)
        assert inputs[0][2:].sum() == 0
        assert lengths == [2, 4]
        assert types == [np.ndarray, np.ndarray]

    def test_disabled(self):
        """Test padding can be switched off."""
        payloads = [[1, 2, 3], [4]]
        inputs, lengths, _ = pad_batch(payloads, enabled=False)
        assert inputs == payloads
        assert lengths == [None, None]


class TestUnpad:
    """Test unpad."""

    def test_restores_original_length_and_type(self):
        """Test echoed outputs come back exactly as submitted."""
        payloads = [[1, 2, 3], (4,), np.array([5.0, 6.0])]
        inputs, lengths, types = pad_batch(payloads)
        outputs = unpad(list(inputs), inputs, lengths, types)

        assert outputs[0] == [1, 2, 3]
        assert outputs[1] == (4,)
        assert isinstance(outputs[2], np.ndarray)
        assert outputs[2].tolist() == [5.0, 6.0]

    def test_outputs_of_other_length_untouched(self):
        """Test a fixed-size output (e.g. a class score) is not sliced."""
        inputs, lengths, types = pad_batch([[1, 2, 3], [4]])
        outputs = unpad([[0.9, 0.1], [0.2, 0.8]], inputs, lengths, types)
        assert outputs == [[0.9, 0.1], [0.2, 0.8]]

    def test_unpadded_items_untouched(self):
        """Test items that were never padded are returned as produced."""
        inputs, lengths, types = pad_batch(["x", [1, 2]])
        outputs = unpad(["X", inputs[1]], inputs, lengths, types)
        assert outputs == ["X", [1, 2]]
