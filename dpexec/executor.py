"""A graph bound to storage on one device."""

import torch

from .errors import UnknownParameterError
from .graph import GradReq, as_grad_req


class Executor:
    """
    Runs one graph against fixed argument, gradient and auxiliary tensors.

    The executor never reallocates its bound storage: forward reads the
    argument tensors, backward writes (or accumulates into) the gradient
    tensors, and auxiliary states are updated in place by the graph.
    """

    def __init__(self, graph, device, arg_arrays, grad_arrays, grad_req, aux_arrays):
        self.graph = graph
        self.device = torch.device(device)
        self.arg_names = graph.list_arguments()
        self.aux_names = graph.list_auxiliary_states()

        assert len(arg_arrays) == len(self.arg_names), "one array per argument is required"
        assert len(aux_arrays) == len(self.aux_names), "one array per auxiliary state is required"

        if grad_arrays is None:
            grad_arrays = [None] * len(self.arg_names)
        elif isinstance(grad_arrays, dict):
            grad_arrays = [grad_arrays.get(name) for name in self.arg_names]
        if isinstance(grad_req, dict):
            grad_req = {name: as_grad_req(grad_req.get(name, GradReq.NOP)) for name in self.arg_names}
        else:
            grad_req = {name: as_grad_req(grad_req) for name in self.arg_names}

        self.arg_arrays = list(arg_arrays)
        self.grad_arrays = list(grad_arrays)
        self.aux_arrays = list(aux_arrays)
        self.grad_req = grad_req

        self.arg_dict = dict(zip(self.arg_names, self.arg_arrays))
        self.grad_dict = {
            name: grad for name, grad in zip(self.arg_names, self.grad_arrays) if grad is not None
        }
        self.aux_dict = dict(zip(self.aux_names, self.aux_arrays))

        # Outputs are allocated at bind time so their shapes are known before forward
        traced = graph.trace_outputs(
            [tuple(a.shape) for a in self.arg_arrays],
            [tuple(a.shape) for a in self.aux_arrays],
            [a.dtype for a in self.arg_arrays],
            [a.dtype for a in self.aux_arrays],
        )
        self.outputs = [torch.zeros(shape, dtype=dtype, device=self.device) for shape, dtype in traced]

        self._heads = None
        self._leaves = {}

    def _needs_grad(self, name) -> bool:
        return self.grad_dict.get(name) is not None and self.grad_req[name] != GradReq.NOP

    def forward(self, is_train: bool = False):
        """Compute the outputs; with is_train, record what backward needs."""
        args = {}
        self._leaves = {}
        for name, array in zip(self.arg_names, self.arg_arrays):
            if is_train and self._needs_grad(name):
                leaf = array.detach().requires_grad_(True)
                self._leaves[name] = leaf
                args[name] = leaf
            else:
                args[name] = array

        with torch.set_grad_enabled(is_train):
            heads = list(self.graph.forward_fn(args, dict(self.aux_dict), is_train))

        self._heads = heads if is_train else None
        with torch.no_grad():
            for i, head in enumerate(heads):
                out = self.outputs[i]
                if out.shape == head.shape and out.dtype == head.dtype:
                    out.copy_(head)
                else:
                    self.outputs[i] = head.detach().clone()
        return self.outputs

    def backward(self, out_grads=()):
        """
        Backpropagate from the outputs of the last training forward.

        Args:
            out_grads: One gradient per output. Empty means a unit gradient
                for every output, which is what loss heads expect.
        """
        if self._heads is None:
            raise RuntimeError("run forward(is_train=True) before backward")
        if isinstance(out_grads, torch.Tensor):
            out_grads = [out_grads]
        out_grads = list(out_grads)
        if not out_grads:
            out_grads = [torch.ones_like(head) for head in self._heads]
        assert len(out_grads) == len(self._heads), (
            f"got {len(out_grads)} output gradients for {len(self._heads)} outputs"
        )

        pairs = [
            (head, grad.to(device=head.device, dtype=head.dtype))
            for head, grad in zip(self._heads, out_grads)
            if head.requires_grad
        ]
        names = list(self._leaves)
        if pairs and names:
            grads = torch.autograd.grad(
                [head for head, _ in pairs],
                [self._leaves[name] for name in names],
                grad_outputs=[grad for _, grad in pairs],
                allow_unused=True,
            )
        else:
            grads = [None] * len(names)

        with torch.no_grad():
            for name, grad in zip(names, grads):
                target = self.grad_dict[name]
                if grad is None:
                    grad = torch.zeros_like(target)
                if self.grad_req[name] == GradReq.ADD:
                    target.add_(grad)
                else:
                    target.copy_(grad)

        self._heads = None
        self._leaves = {}

    def copy_params_from(self, arg_params, aux_params=None, allow_extra_params: bool = False):
        """
        Copy named values into the bound argument and auxiliary tensors.

        Raises:
            UnknownParameterError: a name is not bound here and
                allow_extra_params is False
        """
        with torch.no_grad():
            for name, value in arg_params.items():
                if name in self.arg_dict:
                    self.arg_dict[name].copy_(value)
                elif not allow_extra_params:
                    raise UnknownParameterError(f"Found name '{name}' that is not in the arguments")
            for name, value in (aux_params or {}).items():
                if name in self.aux_dict:
                    self.aux_dict[name].copy_(value)
                elif not allow_extra_params:
                    raise UnknownParameterError(f"Found name '{name}' that is not in the auxiliary states")
