"""
Data-parallel executor group.

A group binds one executor per device against the same graph, splits every
mini-batch across the devices, and keeps a logical view of parameters,
gradients and outputs on top of the per-device storage.

Usage:
    group = DataParallelExecutorGroup(graph, [dev0, dev1], [("data", (32, 10))],
                                      [("label", (32,))])
    group.set_params(arg_params, aux_params)

    # In training loop:
    group.forward(provider, batch, is_train=True)
    group.backward()
    group.update_params(updater, update_on_kvstore=False)
"""

from typing import Optional

import torch

from .binder import ArgIndex, DeviceSlots, bind_device
from .config import DEFAULT_GRAD_REQ, HOST_DEVICE
from .distributed import main_print
from .errors import NotBoundForTrainingError, SharedGroupMismatchError
from .grad_req import freeze_policy, plan_grad_req
from .graph import GradReq
from .inference import check_batch_size, resolve_device, resolve_global
from .io import get_label, load_data, load_label
from .metric import update as update_eval_metric
from .splitter import split_inputs


def _as_pairs(specs) -> list:
    """Accept a dict or a sequence of (name, value) pairs."""
    if specs is None:
        return []
    if hasattr(specs, "items"):
        return list(specs.items())
    return [(name, value) for name, value in specs]


def concat_multi_context(tensors: list) -> torch.Tensor:
    """
    Concatenate per-device tensors along the batch dimension on the first device.

    Scalars (e.g. per-device losses) have no batch dimension and are stacked
    into one entry per device.
    """
    target = tensors[0].device
    if tensors[0].dim() == 0:
        return torch.stack([t.to(target) for t in tensors])
    return torch.cat([t.to(target) for t in tensors], dim=0)


def update_key(param_idx: int, dev_idx: int, num_devices: int) -> int:
    """Updater key unique per (parameter, device) pair."""
    return param_idx * num_devices + dev_idx


class SharedGroup:
    """
    Borrowed handle on another group's parameter storage.

    The owner must outlive every borrower. Borrowers alias the owner's
    parameter, gradient and auxiliary tensors: updates through one group are
    visible through the other, so forward/backward on both must be
    serialized by the caller.
    """

    def __init__(self, owner: "DataParallelExecutorGroup"):
        self.owner = owner
        self.borrowers = 0

    def acquire(self, contexts: list) -> "SharedGroup":
        if len(contexts) != len(self.owner.contexts):
            raise SharedGroupMismatchError(
                f"shared group is bound to {len(self.owner.contexts)} devices, got {len(contexts)}"
            )
        self.borrowers += 1
        return self

    def release(self):
        assert self.borrowers > 0, "release() without a matching acquire()"
        self.borrowers -= 1

    def device_slots(self, dev_idx: int) -> DeviceSlots:
        return self.owner.device_slots[dev_idx]


class ExecutorGroup:
    """Manages a group of executors bound to the same graph."""

    def forward(self, data_provider, data_batch, is_train=None):
        raise NotImplementedError

    def backward(self, out_grads=None):
        raise NotImplementedError

    def update_params(self, updater, update_on_kvstore, kvstore=None):
        raise NotImplementedError

    def get_outputs(self, merge_multi_context=True):
        raise NotImplementedError


class DataParallelExecutorGroup(ExecutorGroup):
    """
    A group of executors, one per device, sharing one logical parameter set.

    Supports:
      - Fixed parameters (freezing), by name list or graph attributes
      - Shape inference, globally and per device
      - Type inference
      - Sharing parameter storage with another group (e.g. train and eval)

    Args:
        graph: Graph to bind on every device
        contexts: Devices, one executor each
        data_shapes: Data inputs as (name, shape) pairs or a dict, batch dimension first
        label_shapes: Label inputs, same format
        data_types: Optional name -> dtype for data inputs
        label_types: Optional name -> dtype for labels
        for_training: Whether backward will be called
        inputs_need_grad: Whether gradients w.r.t. the data inputs are needed
        shared_group: Group (or SharedGroup handle) whose storage is borrowed
        fixed_param_names: Frozen parameter names, a FreezePolicy, or None to
            read `<name>_grad = "freeze"` graph attributes
        grad_req: Requirement for every non-frozen parameter
    """

    def __init__(
        self,
        graph,
        contexts,
        data_shapes,
        label_shapes=None,
        data_types=None,
        label_types=None,
        for_training: bool = True,
        inputs_need_grad: bool = False,
        shared_group=None,
        fixed_param_names=None,
        grad_req=DEFAULT_GRAD_REQ,
    ):
        self.graph = graph
        self.contexts = [torch.device(ctx) for ctx in contexts]
        self.for_training = for_training
        self.inputs_need_grad = inputs_need_grad
        self.fixed_param_names = fixed_param_names
        self._share_handle = None

        data_shapes = _as_pairs(data_shapes)
        label_shapes = _as_pairs(label_shapes)
        self.data_names = [name for name, _ in data_shapes]
        self.label_names = [name for name, _ in label_shapes]
        self.data_shapes = {name: tuple(shape) for name, shape in data_shapes}
        self.label_shapes = {name: tuple(shape) for name, shape in label_shapes}

        self.batch_size = check_batch_size(self.data_shapes, self.label_shapes)
        self.slices = split_inputs(self.batch_size, len(self.contexts))

        arg_names = graph.list_arguments()
        input_names = set(self.data_names) | set(self.label_names)
        unknown = sorted(input_names - set(arg_names))
        if unknown:
            raise ValueError(f"inputs {unknown} are not arguments of the graph")
        self.param_names = [name for name in arg_names if name not in input_names]
        self.aux_names = graph.list_auxiliary_states()
        self.arg_index = ArgIndex(arg_names, self.aux_names)

        if isinstance(shared_group, DataParallelExecutorGroup):
            shared_group = shared_group.share()
        self.shared_group: Optional[SharedGroup] = (
            shared_group.acquire(self.contexts) if shared_group is not None else None
        )

        # Global inference fixes the canonical shapes and types
        provided_types = {
            **dict(_as_pairs(data_types)),
            **dict(_as_pairs(label_types)),
        }
        resolution = resolve_global(graph, self.data_shapes, self.label_shapes, provided_types)

        # Which arguments need gradients, and which parameters are frozen
        self.freeze_policy = freeze_policy(fixed_param_names)
        plan = plan_grad_req(
            arg_names,
            self.param_names,
            self.data_names,
            inputs_need_grad,
            self.freeze_policy.frozen_names(graph),
            grad_req,
        )
        self.grad_req = plan.grad_req
        self.freeze_idx = plan.freeze_idx

        # Host copies of the logical parameters, handy as get_params targets
        param_set = set(self.param_names)
        self.arg_params = {
            name: torch.zeros(shape, dtype=dtype, device=HOST_DEVICE)
            for name, shape, dtype in zip(arg_names, resolution.arg_shapes, resolution.arg_types)
            if name in param_set
        }
        self.aux_params = {
            name: torch.zeros(shape, dtype=dtype, device=HOST_DEVICE)
            for name, shape, dtype in zip(self.aux_names, resolution.aux_shapes, resolution.aux_types)
        }

        if inputs_need_grad:
            no_grad_names = set(self.label_names)
        else:
            no_grad_names = set(self.data_names) | set(self.label_names)

        self.execs = []
        self.device_slots = []
        for i, (device, batch_slice) in enumerate(zip(self.contexts, self.slices)):
            # Per-device inference sizes storage for this device's slice
            arg_shapes_dev, _, aux_shapes_dev = resolve_device(
                graph, self.data_shapes, self.label_shapes, batch_slice.stop - batch_slice.start
            )
            shared_slots = None if self.shared_group is None else self.shared_group.device_slots(i)
            slots, executor = bind_device(
                graph,
                device,
                self.arg_index,
                arg_shapes_dev,
                resolution.arg_types,
                aux_shapes_dev,
                resolution.aux_types,
                self.grad_req,
                no_grad_names,
                param_set,
                shared_slots,
            )
            self.device_slots.append(slots)
            self.execs.append(executor)

        # Sliced views used to scatter each batch
        self.data_arrays = [
            [(self.slices[i], slots.arg(name)) for i, slots in enumerate(self.device_slots)]
            for name in self.data_names
        ]
        self.label_arrays = [
            [(self.slices[i], slots.arg(name)) for i, slots in enumerate(self.device_slots)]
            for name in self.label_names
        ]

        # Logical blocks: one list of per-device tensors per parameter/aux state
        param_pos = self.arg_index.positions(self.param_names)
        self.param_arrays = [[slots.arg_arrays[pos] for slots in self.device_slots] for pos in param_pos]
        self.grad_arrays = [[slots.grad_arrays[pos] for slots in self.device_slots] for pos in param_pos]
        self.aux_arrays = [
            [slots.aux_arrays[i] for slots in self.device_slots] for i in range(len(self.aux_names))
        ]
        if inputs_need_grad and all(self.grad_req[name] != GradReq.NOP for name in self.data_names):
            data_pos = self.arg_index.positions(self.data_names)
            self.input_grad_arrays = [
                [slots.grad_arrays[pos] for slots in self.device_slots] for pos in data_pos
            ]
        else:
            self.input_grad_arrays = []

        main_print(
            f"[ExecutorGroup] Bound {len(self.execs)} executors, batch {self.batch_size} "
            f"split {[s.stop - s.start for s in self.slices]}, "
            f"{len(self.param_names)} params ({len(self.freeze_idx)} frozen)"
        )

    # -----------------
    # Sharing
    # -----------------
    def share(self) -> SharedGroup:
        """Handle through which another group can borrow this group's storage."""
        if self._share_handle is None:
            self._share_handle = SharedGroup(self)
        return self._share_handle

    def close(self):
        """Release the borrow on a shared group, if any."""
        if self.shared_group is not None:
            self.shared_group.release()
            self.shared_group = None

    # -----------------
    # Computation
    # -----------------
    def forward(self, data_provider, data_batch, is_train: Optional[bool] = None):
        """
        Split `data_batch` across the devices and run forward on each.

        Args:
            data_provider: Provider that knows how to load the batch
            data_batch: The batch
            is_train: Hint for the graph; defaults to `for_training`
        """
        if is_train is None:
            is_train = self.for_training

        load_data(data_provider, data_batch, self.data_arrays)
        if is_train and len(get_label(data_provider, data_batch)) > 0:
            load_label(data_provider, data_batch, self.label_arrays)

        for executor in self.execs:
            executor.forward(is_train=is_train)

    def backward(self, out_grads=None):
        """
        Run backward on every device.

        Args:
            out_grads: None, one tensor, or one tensor per output. Gradients
                spanning the whole batch are sliced per device; each device
                receives its own copy.
        """
        if not self.for_training:
            raise NotBoundForTrainingError("re-bind with for_training=True to run backward")
        if out_grads is None:
            out_grads = []
        elif isinstance(out_grads, torch.Tensor):
            out_grads = [out_grads]

        for device, batch_slice, executor in zip(self.contexts, self.slices, self.execs):
            out_grad_slices = []
            for grad in out_grads:
                if grad.dim() > 0 and grad.shape[0] == self.batch_size:
                    grad = grad[batch_slice]
                out_grad_slices.append(grad.to(device, copy=True))
            executor.backward(out_grad_slices)

    # -----------------
    # Parameters
    # -----------------
    def set_params(self, arg_params, aux_params=None, allow_extra_params: bool = False):
        """
        Copy parameters into every executor.

        Args:
            arg_params: Dict name -> tensor
            aux_params: Dict name -> tensor for auxiliary states
            allow_extra_params: Ignore names the graph does not have instead of raising
        """
        for executor in self.execs:
            executor.copy_params_from(arg_params, aux_params or {}, allow_extra_params=allow_extra_params)

    def get_params(self, arg_params=None, aux_params=None):
        """
        Average each parameter over the devices and copy it into the targets.

        The target tensors are updated in place. When omitted, the group's
        own host copies (`self.arg_params`, `self.aux_params`) are used.

        Returns:
            (arg_params, aux_params)
        """
        if arg_params is None:
            arg_params = self.arg_params
        if aux_params is None:
            aux_params = self.aux_params

        for name, block in zip(self.param_names, self.param_arrays):
            _average_into(arg_params[name], block)
        for name, block in zip(self.aux_names, self.aux_arrays):
            _average_into(aux_params[name], block)
        return arg_params, aux_params

    def init_kvstore(self, kvstore):
        """Register every trainable parameter with `kvstore` and pull it back to all devices."""
        for idx, block in enumerate(self.param_arrays):
            if idx in self.freeze_idx:
                continue
            kvstore.init(idx, block[0])
            kvstore.pull(idx, block, priority=-idx)

    def update_params(self, updater, update_on_kvstore: bool, kvstore=None):
        """
        Apply gradients to the parameters.

        With a kvstore, each gradient block is pushed and either the updated
        weights (update_on_kvstore) or the aggregated gradients are pulled
        back in place. Without updating on the store, `updater(key, grad,
        weight)` runs on every device with key `idx * num_devices + dev_idx`.
        Frozen parameters are skipped entirely.
        """
        if update_on_kvstore and kvstore is None:
            raise ValueError("update_on_kvstore requires a kvstore")
        if not update_on_kvstore and updater is None:
            raise ValueError("an updater is required when not updating on the kvstore")
        if kvstore is not None and update_on_kvstore != kvstore.has_updater:
            # Pulled values are weights when the store updates, gradients otherwise
            raise ValueError(
                f"update_on_kvstore={update_on_kvstore} does not match the kvstore, which "
                f"{'has' if kvstore.has_updater else 'has no'} updater"
            )

        num_dev = len(self.contexts)
        for idx, (param_block, grad_block) in enumerate(zip(self.param_arrays, self.grad_arrays)):
            if idx in self.freeze_idx:
                continue
            if any(grad is None for grad in grad_block):
                continue

            if kvstore is not None:
                # Earlier parameters get higher priority
                kvstore.push(idx, grad_block, priority=-idx)
                if update_on_kvstore:
                    kvstore.pull(idx, param_block, priority=-idx)
                else:
                    kvstore.pull(idx, grad_block, priority=-idx)

            if not update_on_kvstore:
                for dev_idx in range(num_dev):
                    updater(update_key(idx, dev_idx, num_dev), grad_block[dev_idx], param_block[dev_idx])

    # -----------------
    # Results
    # -----------------
    def update_metric(self, eval_metric, data_provider, data_batch):
        """Accumulate `eval_metric` over the merged outputs of the last forward."""
        outputs = self.get_outputs()
        update_eval_metric(eval_metric, get_label(data_provider, data_batch), outputs)

    def get_outputs(self, merge_multi_context: bool = True):
        """
        Outputs of the last forward.

        Returns:
            `[out1, out2]` when merging, otherwise
            `[[out1_dev1, out1_dev2], [out2_dev1, out2_dev2]]`
        """
        outputs = [
            [executor.outputs[i] for executor in self.execs]
            for i in range(len(self.execs[0].outputs))
        ]
        if merge_multi_context:
            return [concat_multi_context(tensors) for tensors in outputs]
        return outputs

    def get_input_grads(self, merge_multi_context: bool = True):
        """Gradients w.r.t. the data inputs; empty unless bound with inputs_need_grad."""
        if not self.inputs_need_grad:
            return []
        if merge_multi_context:
            return [concat_multi_context(tensors) for tensors in self.input_grad_arrays]
        return self.input_grad_arrays

    def output_shapes(self) -> dict:
        """Output name -> shape on the first device."""
        shapes = [tuple(out.shape) for out in self.execs[0].outputs]
        return dict(zip(self.graph.list_outputs(), shapes))


def _average_into(target: torch.Tensor, block: list):
    # Integer states (e.g. step counters) are averaged in float and floored back
    dtype = torch.promote_types(block[0].dtype, torch.float32)
    with torch.no_grad():
        total = torch.zeros(block[0].shape, dtype=dtype, device=HOST_DEVICE)
        for array in block:
            total += array.to(HOST_DEVICE, dtype)
        total /= len(block)
        if not target.is_floating_point():
            total = total.floor()
        target.copy_(total)
