"""Shared fixtures: a small fully-connected graph bound on two CPU "devices"."""

import pytest
import torch

from dpexec import DataBatch, DataParallelExecutorGroup, DataProvider, Graph

NUM_FEATURES = 3
NUM_HIDDEN = 2


def fc_forward(args, aux, is_train):
    out = args["data"] @ args["fc_weight"].t() + args["fc_bias"]
    if is_train:
        with torch.no_grad():
            aux["fc_moving_mean"].mul_(0.9).add_(0.1 * out.mean(dim=0))
    return [out]


def fc_shapes(shapes):
    if "data" not in shapes:
        return {}
    batch, features = shapes["data"]
    return {
        "fc_weight": (NUM_HIDDEN, features),
        "fc_bias": (NUM_HIDDEN,),
        "label": (batch,),
        "fc_moving_mean": (NUM_HIDDEN,),
    }


def make_fc_graph(attrs=None, shape_rule=fc_shapes):
    return Graph(
        fc_forward,
        arguments=["data", "fc_weight", "fc_bias", "label"],
        outputs=["fc_output"],
        aux_states=["fc_moving_mean"],
        attrs=attrs,
        shape_rule=shape_rule,
        dtypes={"label": torch.int64},
    )


@pytest.fixture
def cpus():
    return [torch.device("cpu"), torch.device("cpu")]


@pytest.fixture
def fc_graph():
    return make_fc_graph()


@pytest.fixture
def provider():
    return DataProvider(data_names=["data"], label_names=["label"])


@pytest.fixture
def batch():
    return DataBatch(
        data=[torch.ones(5, NUM_FEATURES)],
        label=[torch.tensor([0, 0, 0, 1, 1])],
    )


@pytest.fixture
def make_group(fc_graph, cpus):
    """Build a group over a batch of 5 with unit weights and zero bias."""

    def _make(graph=None, batch_size=5, **kwargs):
        group = DataParallelExecutorGroup(
            graph or fc_graph,
            cpus,
            data_shapes=[("data", (batch_size, NUM_FEATURES))],
            label_shapes=[("label", (batch_size,))],
            **kwargs,
        )
        group.set_params(
            {"fc_weight": torch.ones(NUM_HIDDEN, NUM_FEATURES), "fc_bias": torch.zeros(NUM_HIDDEN)},
            {"fc_moving_mean": torch.zeros(NUM_HIDDEN)},
        )
        return group

    return _make
