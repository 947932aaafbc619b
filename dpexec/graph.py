"""
Computation graph definition.

A `Graph` names its arguments, auxiliary states and outputs, knows how to
infer their shapes and types, and binds against concrete device storage to
produce an `Executor`. The computation itself is a plain function over
torch tensors:

    def forward_fn(args: dict, aux: dict, is_train: bool) -> list[Tensor]
"""

import functools
from enum import Enum
from typing import Callable, Optional

import torch

from .config import DEFAULT_DTYPE


class GradReq(Enum):
    """How an argument's gradient is produced by backward."""
    NOP = "null"
    WRITE = "write"
    ADD = "add"


def as_grad_req(req) -> GradReq:
    if isinstance(req, GradReq):
        return req
    return GradReq(req)


class Graph:
    """
    Symbolic description of a computation.

    Args:
        forward_fn: Computes the outputs from argument and auxiliary tensors
        arguments: Ordered argument names (inputs and parameters)
        outputs: Ordered output names
        aux_states: Ordered auxiliary state names
        attrs: Attribute map, e.g. {"fc_weight_grad": "freeze"}
        shape_rule: Maps the known shapes to shapes of the remaining
            arguments/aux states; returns whatever it can determine
        dtypes: Per-name dtype overrides (e.g. integer labels)
        default_dtype: Dtype of every name without an override
    """

    def __init__(
        self,
        forward_fn: Callable,
        arguments,
        outputs,
        aux_states=(),
        attrs: Optional[dict] = None,
        shape_rule: Optional[Callable] = None,
        dtypes: Optional[dict] = None,
        default_dtype: torch.dtype = DEFAULT_DTYPE,
    ):
        self.forward_fn = forward_fn
        self._arguments = list(arguments)
        self._outputs = list(outputs)
        self._aux_states = list(aux_states)
        self._attrs = dict(attrs or {})
        self.shape_rule = shape_rule
        self.dtypes = dict(dtypes or {})
        self.default_dtype = default_dtype

    def list_arguments(self) -> list[str]:
        return list(self._arguments)

    def list_outputs(self) -> list[str]:
        return list(self._outputs)

    def list_auxiliary_states(self) -> list[str]:
        return list(self._aux_states)

    def list_all_attr(self) -> dict:
        return dict(self._attrs)

    # -----------------
    # Inference
    # -----------------
    def infer_shape(self, provided: dict):
        """
        Infer argument, output and auxiliary shapes.

        Returns:
            (arg_shapes, out_shapes, aux_shapes), or (None, None, None) when
            the provided shapes are not enough to determine every shape.
        """
        shapes = {name: tuple(shape) for name, shape in provided.items()}
        if self.shape_rule is not None:
            for name, shape in self.shape_rule(dict(shapes)).items():
                shapes.setdefault(name, tuple(shape))

        for name in self._arguments + self._aux_states:
            shape = shapes.get(name)
            if shape is None or any(dim is None for dim in shape):
                return None, None, None

        arg_shapes = [shapes[name] for name in self._arguments]
        aux_shapes = [shapes[name] for name in self._aux_states]
        out_shapes = [shape for shape, _ in self.trace_outputs(arg_shapes, aux_shapes)]
        return arg_shapes, out_shapes, aux_shapes

    def infer_type(self, provided: dict):
        """
        Infer argument, output and auxiliary dtypes.

        Names without a provided type fall back to the graph's overrides and
        then to the default dtype, so type inference always resolves.
        """
        def lookup(name):
            return provided.get(name, self.dtypes.get(name, self.default_dtype))

        arg_types = [lookup(name) for name in self._arguments]
        aux_types = [lookup(name) for name in self._aux_states]
        floating = [t for t in arg_types if t.is_floating_point] or [self.default_dtype]
        out_type = functools.reduce(torch.promote_types, floating)
        return arg_types, [out_type] * len(self._outputs), aux_types

    def trace_outputs(self, arg_shapes, aux_shapes, arg_types=None, aux_types=None):
        """Run forward_fn on meta tensors and report (shape, dtype) per output."""
        if arg_types is None or aux_types is None:
            arg_types, _, aux_types = self.infer_type({})
        args = {
            name: torch.empty(shape, dtype=dtype, device="meta")
            for name, shape, dtype in zip(self._arguments, arg_shapes, arg_types)
        }
        aux = {
            name: torch.empty(shape, dtype=dtype, device="meta")
            for name, shape, dtype in zip(self._aux_states, aux_shapes, aux_types)
        }
        with torch.no_grad():
            outputs = list(self.forward_fn(args, aux, False))
        assert len(outputs) == len(self._outputs), (
            f"forward_fn returned {len(outputs)} outputs, expected {len(self._outputs)}"
        )
        return [(tuple(out.shape), out.dtype) for out in outputs]

    # -----------------
    # Binding
    # -----------------
    def bind(self, device, arg_arrays, grad_arrays=None, grad_req=GradReq.WRITE, aux_arrays=()):
        """
        Bind the graph to concrete storage on `device`.

        Args:
            device: Execution target
            arg_arrays: One tensor per argument, in `list_arguments()` order
            grad_arrays: Dict name -> gradient tensor, or a list aligned with
                the arguments holding None where no gradient is wanted
            grad_req: A single requirement or a dict name -> requirement
            aux_arrays: One tensor per auxiliary state
        """
        from .executor import Executor

        return Executor(self, device, arg_arrays, grad_arrays, grad_req, aux_arrays)
