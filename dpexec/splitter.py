"""Partition the batch dimension across devices."""


def split_inputs(batch_size: int, num_devices: int) -> list[slice]:
    """
    Split `range(batch_size)` into `num_devices` contiguous slices.

    The split is as even as possible: the first `batch_size % num_devices`
    slices hold one extra sample.

    Args:
        batch_size: Size of the batch (leading) dimension
        num_devices: Number of devices to split across, must not exceed batch_size

    Returns:
        List of half-open slices, one per device, covering [0, batch_size)
    """
    # TODO: split by per-device workload once devices report throughput
    assert 0 < num_devices <= batch_size, (
        f"cannot split a batch of {batch_size} across {num_devices} devices"
    )

    per_split = batch_size // num_devices
    counts = [per_split] * num_devices
    extra = batch_size - sum(counts)
    for i in range(extra):
        counts[i] += 1

    slices = []
    start = 0
    for count in counts:
        slices.append(slice(start, start + count))
        start += count
    return slices
