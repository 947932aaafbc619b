"""
Per-device storage allocation and executor binding.

Storage for each device lives in a `DeviceSlots` table whose positions
follow a single `ArgIndex` computed once per group, so lookups by name are
dictionary hits rather than scans over the argument list.
"""

from dataclasses import dataclass
from typing import Optional

import torch

from .errors import SharedGroupMismatchError
from .graph import GradReq


class ArgIndex:
    """Stable name -> position mapping for arguments and auxiliary states."""

    def __init__(self, arg_names, aux_names):
        self.arg_names = list(arg_names)
        self.aux_names = list(aux_names)
        self.arg_position = {name: i for i, name in enumerate(self.arg_names)}
        self.aux_position = {name: i for i, name in enumerate(self.aux_names)}

    def positions(self, names) -> list[int]:
        return [self.arg_position[name] for name in names]


@dataclass
class DeviceSlots:
    """Storage owned by one device: argument, gradient and aux tensors."""
    device: torch.device
    index: ArgIndex
    arg_arrays: list
    grad_arrays: list   # None where the argument has no gradient
    aux_arrays: list

    def arg(self, name) -> Optional[torch.Tensor]:
        pos = self.index.arg_position.get(name)
        return None if pos is None else self.arg_arrays[pos]

    def grad(self, name) -> Optional[torch.Tensor]:
        pos = self.index.arg_position.get(name)
        return None if pos is None else self.grad_arrays[pos]

    def aux(self, name) -> Optional[torch.Tensor]:
        pos = self.index.aux_position.get(name)
        return None if pos is None else self.aux_arrays[pos]


def _same_device(a: torch.device, b: torch.device) -> bool:
    if a.type != b.type:
        return False
    return a.index is None or b.index is None or a.index == b.index


def _borrow(shared: Optional[torch.Tensor], name: str, shape, dtype, device):
    """Reuse `shared` when present, after checking it fits."""
    if shared is None:
        return torch.zeros(shape, dtype=dtype, device=device)
    if (
        tuple(shared.shape) != tuple(shape)
        or shared.dtype != dtype
        or not _same_device(shared.device, device)
    ):
        raise SharedGroupMismatchError(
            f"cannot share '{name}': shared storage is {tuple(shared.shape)} {shared.dtype} "
            f"on {shared.device}, needed {tuple(shape)} {dtype} on {device}"
        )
    return shared


def bind_device(
    graph,
    device,
    index: ArgIndex,
    arg_shapes,
    arg_types,
    aux_shapes,
    aux_types,
    grad_req: dict,
    no_grad_names: set,
    shareable_names: set,
    shared_slots: Optional[DeviceSlots] = None,
):
    """
    Allocate storage for one device and bind an executor to it.

    Args:
        graph: Graph to bind
        device: Target device
        index: Name -> position mapping shared by every device of the group
        arg_shapes, arg_types: Per-device argument shapes and dtypes
        aux_shapes, aux_types: Per-device auxiliary state shapes and dtypes
        grad_req: Argument name -> GradReq
        no_grad_names: Inputs that never get a gradient array
        shareable_names: Arguments that may be borrowed from `shared_slots`
        shared_slots: Storage of the same device in a shared group, if any

    Returns:
        (DeviceSlots, Executor)
    """
    device = torch.device(device)

    def lend(kind, name):
        if shared_slots is None or name not in shareable_names:
            return None
        return getattr(shared_slots, kind)(name)

    arg_arrays = [
        _borrow(lend("arg", name), name, shape, dtype, device)
        for name, shape, dtype in zip(index.arg_names, arg_shapes, arg_types)
    ]

    grad_arrays = []
    for name, shape, dtype in zip(index.arg_names, arg_shapes, arg_types):
        if name in no_grad_names or grad_req[name] == GradReq.NOP:
            grad_arrays.append(None)
        else:
            grad_arrays.append(_borrow(lend("grad", name), name, shape, dtype, device))

    aux_shared = shared_slots.aux if shared_slots is not None else (lambda name: None)
    aux_arrays = [
        _borrow(aux_shared(name), name, shape, dtype, device)
        for name, shape, dtype in zip(index.aux_names, aux_shapes, aux_types)
    ]

    executor = graph.bind(device, arg_arrays, grad_arrays, grad_req, aux_arrays)
    slots = DeviceSlots(device, index, arg_arrays, grad_arrays, aux_arrays)
    return slots, executor
