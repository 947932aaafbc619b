"""Batch splitting across devices."""

import pytest

from dpexec import split_inputs


@pytest.mark.parametrize("batch_size", [1, 2, 5, 7, 16, 33])
@pytest.mark.parametrize("num_devices", [1, 2, 3, 4])
def test_slices_partition_batch(batch_size, num_devices):
    if num_devices > batch_size:
        pytest.skip("more devices than samples")

    slices = split_inputs(batch_size, num_devices)

    assert len(slices) == num_devices
    assert slices[0].start == 0
    assert slices[-1].stop == batch_size
    for prev, cur in zip(slices, slices[1:]):
        assert prev.stop == cur.start
    lengths = [s.stop - s.start for s in slices]
    assert sum(lengths) == batch_size
    assert max(lengths) - min(lengths) <= 1


def test_extra_samples_go_to_first_devices():
    assert split_inputs(5, 2) == [slice(0, 3), slice(3, 5)]
    assert split_inputs(10, 4) == [slice(0, 3), slice(3, 6), slice(6, 8), slice(8, 10)]


def test_more_devices_than_samples_is_rejected():
    with pytest.raises(AssertionError):
        split_inputs(2, 3)
