"""
Gradient requirements and parameter freezing.

Every graph argument gets exactly one `GradReq`. Parameters can be frozen
either by an explicit name list or by graph attributes of the form
`<name>_grad = "freeze"`; frozen parameters get `GradReq.NOP` and their
positions in the parameter list are reported so updates can skip them.
"""

from dataclasses import dataclass

from .config import FREEZE_ATTR_SUFFIX, FREEZE_ATTR_VALUE
from .graph import GradReq, as_grad_req


# -----------------
# Freeze policies
# -----------------
class FreezePolicy:
    """Decides which parameters of a graph are frozen."""

    def frozen_names(self, graph) -> set:
        raise NotImplementedError


class ExplicitFreeze(FreezePolicy):
    """Freeze exactly the given parameter names."""

    def __init__(self, names):
        self.names = list(names)

    def frozen_names(self, graph) -> set:
        return set(self.names)

    def __repr__(self):
        return f"ExplicitFreeze({self.names!r})"


class AttributeFreeze(FreezePolicy):
    """Freeze parameters whose `<name><suffix>` attribute equals `sentinel`."""

    def __init__(self, suffix: str = FREEZE_ATTR_SUFFIX, sentinel: str = FREEZE_ATTR_VALUE):
        self.suffix = suffix
        self.sentinel = sentinel

    def frozen_names(self, graph) -> set:
        attrs = graph.list_all_attr()
        items = attrs.items() if hasattr(attrs, "items") else attrs
        names = set()
        for key, value in items:
            key = str(key)
            if key.endswith(self.suffix) and value == self.sentinel:
                names.add(key[: -len(self.suffix)])
        return names

    def __repr__(self):
        return f"AttributeFreeze(suffix={self.suffix!r}, sentinel={self.sentinel!r})"


def freeze_policy(fixed_param_names=None) -> FreezePolicy:
    """Pick a policy: None reads graph attributes, a list names parameters."""
    if isinstance(fixed_param_names, FreezePolicy):
        return fixed_param_names
    if fixed_param_names is None:
        return AttributeFreeze()
    return ExplicitFreeze(fixed_param_names)


# -----------------
# Planning
# -----------------
@dataclass(frozen=True)
class GradPlan:
    grad_req: dict          # argument name -> GradReq
    freeze_idx: frozenset   # positions into param_names


def plan_grad_req(
    arg_names,
    param_names,
    data_names,
    inputs_need_grad: bool,
    frozen_names,
    default_grad_req=GradReq.WRITE,
) -> GradPlan:
    """
    Classify every argument.

    Parameters get the default requirement unless frozen. Data inputs get it
    only when input gradients were requested. Everything else (labels,
    unknown arguments) gets NOP. A name that is both a parameter and a data
    input is treated as a parameter; this precedence is kept for
    compatibility.
    """
    default_grad_req = as_grad_req(default_grad_req)
    param_set = set(param_names)
    data_set = set(data_names)
    frozen = set(frozen_names)

    freeze_idx = frozenset(i for i, name in enumerate(param_names) if name in frozen)

    grad_req = {}
    for name in arg_names:
        if name in param_set:
            grad_req[name] = GradReq.NOP if name in frozen else default_grad_req
        elif name in data_set:
            grad_req[name] = default_grad_req if inputs_need_grad else GradReq.NOP
        else:
            grad_req[name] = GradReq.NOP

    return GradPlan(grad_req=grad_req, freeze_idx=freeze_idx)
