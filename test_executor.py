"""Single-device executor binding, forward and backward."""

import pytest
import torch

from dpexec import GradReq, UnknownParameterError

from conftest import NUM_FEATURES, NUM_HIDDEN, make_fc_graph


def bind_fc(grad_req=GradReq.WRITE, batch_size=4):
    graph = make_fc_graph()
    data = torch.ones(batch_size, NUM_FEATURES)
    weight = torch.ones(NUM_HIDDEN, NUM_FEATURES)
    bias = torch.zeros(NUM_HIDDEN)
    label = torch.zeros(batch_size, dtype=torch.int64)
    grads = {"fc_weight": torch.zeros_like(weight), "fc_bias": torch.zeros_like(bias)}
    aux = [torch.zeros(NUM_HIDDEN)]
    return graph.bind("cpu", [data, weight, bias, label], grads, grad_req, aux)


def test_outputs_are_allocated_at_bind():
    executor = bind_fc()

    assert len(executor.outputs) == 1
    assert executor.outputs[0].shape == (4, NUM_HIDDEN)


def test_forward_computes_outputs():
    executor = bind_fc()
    outputs = executor.forward(is_train=False)

    assert torch.allclose(outputs[0], torch.full((4, NUM_HIDDEN), 3.0))


def test_backward_writes_gradients():
    executor = bind_fc()
    executor.forward(is_train=True)
    executor.backward()

    assert torch.allclose(executor.grad_dict["fc_weight"], torch.full((NUM_HIDDEN, NUM_FEATURES), 4.0))
    assert torch.allclose(executor.grad_dict["fc_bias"], torch.full((NUM_HIDDEN,), 4.0))

    # write overwrites on the next pass
    executor.forward(is_train=True)
    executor.backward([torch.full((4, NUM_HIDDEN), 0.5)])
    assert torch.allclose(executor.grad_dict["fc_bias"], torch.full((NUM_HIDDEN,), 2.0))


def test_backward_accumulates_with_add():
    executor = bind_fc(grad_req=GradReq.ADD)
    for _ in range(2):
        executor.forward(is_train=True)
        executor.backward()

    assert torch.allclose(executor.grad_dict["fc_bias"], torch.full((NUM_HIDDEN,), 8.0))


def test_backward_requires_training_forward():
    executor = bind_fc()
    executor.forward(is_train=False)

    with pytest.raises(RuntimeError):
        executor.backward()


def test_training_forward_updates_aux_in_place():
    executor = bind_fc()
    moving_mean = executor.aux_dict["fc_moving_mean"]
    executor.forward(is_train=True)

    assert executor.aux_dict["fc_moving_mean"] is moving_mean
    assert torch.allclose(moving_mean, torch.full((NUM_HIDDEN,), 0.3))


def test_copy_params_from():
    executor = bind_fc()
    weight = executor.arg_dict["fc_weight"]
    executor.copy_params_from({"fc_weight": torch.full((NUM_HIDDEN, NUM_FEATURES), 2.0)})

    assert executor.arg_dict["fc_weight"] is weight
    assert torch.all(weight == 2.0)

    with pytest.raises(UnknownParameterError):
        executor.copy_params_from({"conv_weight": torch.zeros(1)})
    executor.copy_params_from({"conv_weight": torch.zeros(1)}, allow_extra_params=True)


def test_forward_writes_into_bound_outputs():
    executor = bind_fc()
    bound = executor.outputs[0]
    executor.forward(is_train=False)
    executor.arg_dict["fc_bias"].fill_(1.0)
    executor.forward(is_train=True)

    assert executor.outputs[0] is bound
    assert torch.allclose(bound, torch.full((4, NUM_HIDDEN), 4.0))
