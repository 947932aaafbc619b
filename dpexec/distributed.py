"""Distributed process helpers."""

import os
import torch
import torch.distributed as dist

from .config import DIST_BACKEND


# -----------------
# Environment Helpers
# -----------------
def get_rank() -> int:
    """Get current process rank from environment."""
    return int(os.environ.get("RANK", 0))


def get_world_size() -> int:
    """Get total number of processes from environment."""
    return int(os.environ.get("WORLD_SIZE", 1))


def get_local_rank() -> int:
    """Get local rank (which GPU on this node)."""
    return int(os.environ.get("LOCAL_RANK", 0))


def is_main_process() -> bool:
    """Check if this is the main process (rank 0)."""
    return get_rank() == 0


def main_print(*msg):
    """Print only on the main process."""
    if is_main_process():
        print(*msg, flush=True)


# -----------------
# Process Group Management
# -----------------
def setup_distributed(backend: str = DIST_BACKEND):
    """
    Initialize the distributed process group.

    Args:
        backend: Communication backend ("gloo" for host buffers, "nccl" for GPU)
    """
    if not dist.is_initialized():
        dist.init_process_group(backend=backend)


def cleanup_distributed():
    """Clean up distributed process group."""
    if dist.is_initialized():
        dist.destroy_process_group()


# -----------------
# Collectives
# -----------------
def broadcast_tensor(tensor: torch.Tensor, src: int = 0) -> torch.Tensor:
    """
    Overwrite `tensor` on every rank with the value held by rank `src`.

    A no-op when no process group is running.
    """
    if dist.is_initialized() and dist.get_world_size() > 1:
        dist.broadcast(tensor, src=src)
    return tensor


def all_reduce_sum(tensor: torch.Tensor) -> torch.Tensor:
    """Sum `tensor` in place across all ranks."""
    if dist.is_initialized() and dist.get_world_size() > 1:
        dist.all_reduce(tensor, op=dist.ReduceOp.SUM)
    return tensor
