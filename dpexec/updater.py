"""Local update functions: updater(key, grad, weight) mutates weight in place."""

from typing import Optional

import torch


class SGDUpdater:
    """
    Momentum SGD keyed by an integer slot.

    Momentum buffers are kept per key, so callers must give every
    (parameter, device) pair its own key.

    Args:
        lr: Learning rate
        momentum: Momentum factor, 0 disables the buffer
        weight_decay: L2 penalty added to the gradient
        rescale_grad: Factor applied to the raw gradient (e.g. 1/batch_size)
        clip_gradient: Clamp the rescaled gradient to [-clip, clip]
    """

    def __init__(
        self,
        lr: float = 0.01,
        momentum: float = 0.0,
        weight_decay: float = 0.0,
        rescale_grad: float = 1.0,
        clip_gradient: Optional[float] = None,
    ):
        self.lr = lr
        self.momentum = momentum
        self.weight_decay = weight_decay
        self.rescale_grad = rescale_grad
        self.clip_gradient = clip_gradient
        self.states: dict = {}

    def __call__(self, key, grad: torch.Tensor, weight: torch.Tensor):
        with torch.no_grad():
            g = grad.to(weight.device) * self.rescale_grad
            if self.clip_gradient is not None:
                g = g.clamp(-self.clip_gradient, self.clip_gradient)
            g = g + self.weight_decay * weight

            if self.momentum:
                buf = self.states.get(key)
                if buf is None:
                    buf = self.states[key] = torch.zeros_like(weight)
                buf.mul_(self.momentum).add_(g)
                g = buf

            weight.sub_(self.lr * g)
