"""Utility functions for driving executor groups."""

import random

import numpy as np
import torch


def set_seed(seed: int, rank: int = 0):
    """
    Set random seeds for reproducibility.

    Args:
        seed: Base seed value
        rank: Process rank (used to offset seed for different data per rank)
    """
    random.seed(seed + rank)
    np.random.seed(seed + rank)
    torch.manual_seed(seed + rank)
    torch.cuda.manual_seed_all(seed + rank)


def global_l2_norm(tensors) -> float:
    """Compute global L2 norm over a list of tensors, skipping None entries."""
    sq_sum = None
    with torch.no_grad():
        for t in tensors:
            if t is None:
                continue
            if sq_sum is None:
                sq_sum = torch.zeros((), device=t.device)
            sq_sum += (t.float().to(sq_sum.device) ** 2).sum()
    return float(torch.sqrt(sq_sum).item()) if sq_sum is not None else 0.0


def available_devices(min_devices: int = 1) -> list[torch.device]:
    """Every visible GPU, or `min_devices` CPU contexts when there is none."""
    if torch.cuda.is_available():
        return [torch.device(f"cuda:{i}") for i in range(torch.cuda.device_count())]
    return [torch.device("cpu")] * min_devices
