"""
Key-value stores for parameter synchronization.

A store aggregates (sums) the per-device blocks pushed under a key. With an
updater installed, the sum is treated as a gradient and applied to the
stored weight; otherwise the sum itself is stored. `pull` copies the stored
value into every tensor of the target block.
"""

import torch

from .config import HOST_DEVICE
from .distributed import all_reduce_sum, broadcast_tensor, get_rank, get_world_size


def _as_block(value) -> list:
    if isinstance(value, torch.Tensor):
        return [value]
    return list(value)


class KVStore:
    """Interface: init, push, pull, set_updater."""

    type = "base"

    @property
    def has_updater(self) -> bool:
        """Whether push applies an update to the stored weight."""
        raise NotImplementedError

    def init(self, key, value):
        raise NotImplementedError

    def push(self, key, value, priority: int = 0):
        raise NotImplementedError

    def pull(self, key, out, priority: int = 0):
        raise NotImplementedError

    def set_updater(self, updater):
        raise NotImplementedError


class LocalKVStore(KVStore):
    """
    In-process store.

    Operations run immediately in call order, so `priority` only orders
    work in asynchronous stores and is accepted for interface compatibility.
    """

    type = "local"

    def __init__(self):
        self._store: dict = {}
        self._updater = None

    @property
    def rank(self) -> int:
        return 0

    @property
    def num_workers(self) -> int:
        return 1

    def set_updater(self, updater):
        self._updater = updater

    @property
    def has_updater(self) -> bool:
        return self._updater is not None

    def init(self, key, value):
        block = _as_block(value)
        self._store[key] = block[0].detach().to(HOST_DEVICE, copy=True)

    def _reduce(self, block: list) -> torch.Tensor:
        merged = torch.zeros(block[0].shape, dtype=block[0].dtype, device=HOST_DEVICE)
        with torch.no_grad():
            for value in block:
                merged += value.detach().to(HOST_DEVICE)
        return merged

    def push(self, key, value, priority: int = 0):
        merged = self._reduce(_as_block(value))
        if self._updater is not None:
            if key not in self._store:
                raise KeyError(f"key {key!r} must be initialized before pushing with an updater")
            self._updater(key, merged, self._store[key])
        else:
            self._store[key] = merged

    def pull(self, key, out, priority: int = 0):
        if key not in self._store:
            raise KeyError(f"key {key!r} has not been initialized or pushed")
        stored = self._store[key]
        with torch.no_grad():
            for target in _as_block(out):
                target.copy_(stored)


class DistributedKVStore(LocalKVStore):
    """
    Store shared by every process of a torch.distributed group.

    Pushed blocks are summed locally, then summed across ranks. Every rank
    holds a replica of the stored values and applies the same updater, so
    replicas stay identical as long as they start identical: `init` takes
    rank 0's value.
    """

    type = "dist_sync"

    @property
    def rank(self) -> int:
        return get_rank()

    @property
    def num_workers(self) -> int:
        return get_world_size()

    def init(self, key, value):
        super().init(key, value)
        broadcast_tensor(self._store[key], src=0)

    def _reduce(self, block: list) -> torch.Tensor:
        return all_reduce_sum(super()._reduce(block))


def create_kvstore(name: str = "local") -> KVStore:
    """Create a store by type name: "local" or "dist_sync"."""
    if name == "local":
        return LocalKVStore()
    if name in ("dist", "dist_sync"):
        return DistributedKVStore()
    raise ValueError(f"unknown kvstore type '{name}'")
