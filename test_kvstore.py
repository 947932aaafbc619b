"""Key-value stores and the SGD updater."""

import pytest
import torch

from dpexec import LocalKVStore, SGDUpdater, create_kvstore


def test_push_sums_block_and_pull_broadcasts():
    kv = LocalKVStore()
    kv.push(3, [torch.ones(2), torch.full((2,), 2.0)])

    out = [torch.zeros(2), torch.zeros(2)]
    kv.pull(3, out)

    for tensor in out:
        assert torch.allclose(tensor, torch.full((2,), 3.0))


def test_updater_applies_to_stored_weight():
    kv = LocalKVStore()
    kv.set_updater(SGDUpdater(lr=0.5))
    kv.init(0, torch.ones(2))
    kv.push(0, [torch.ones(2), torch.ones(2)])

    weight = torch.zeros(2)
    kv.pull(0, weight)
    assert torch.allclose(weight, torch.zeros(2))


def test_push_with_updater_requires_init():
    kv = LocalKVStore()
    kv.set_updater(SGDUpdater())

    with pytest.raises(KeyError):
        kv.push(0, torch.ones(2))


def test_pull_unknown_key():
    with pytest.raises(KeyError):
        LocalKVStore().pull(7, torch.zeros(1))


def test_create_kvstore():
    assert create_kvstore("local").type == "local"
    assert create_kvstore("dist_sync").num_workers >= 1
    with pytest.raises(ValueError):
        create_kvstore("device")


def test_sgd_momentum_state_is_per_key():
    updater = SGDUpdater(lr=1.0, momentum=0.5)
    a, b = torch.zeros(1), torch.zeros(1)

    updater(0, torch.ones(1), a)
    updater(0, torch.ones(1), a)
    updater(1, torch.ones(1), b)

    assert torch.allclose(a, torch.tensor([-2.5]))
    assert torch.allclose(b, torch.tensor([-1.0]))
    assert set(updater.states) == {0, 1}


def test_has_updater_follows_set_updater():
    kv = LocalKVStore()
    assert not kv.has_updater

    kv.set_updater(SGDUpdater())
    assert kv.has_updater


def test_sgd_clips_rescaled_gradient():
    updater = SGDUpdater(lr=1.0, rescale_grad=0.5, clip_gradient=1.0)
    weight = torch.zeros(3)
    updater(0, torch.tensor([-6.0, 1.0, 6.0]), weight)

    assert torch.allclose(weight, torch.tensor([1.0, -0.5, -1.0]))
