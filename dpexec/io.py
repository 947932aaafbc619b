"""Batches and the provider interface used to scatter them onto devices."""

from dataclasses import dataclass, field
from typing import Tuple

import torch

# (batch slice, device tensor holding that slice)
SlicedTensor = Tuple[slice, torch.Tensor]


@dataclass
class DataBatch:
    """One mini-batch: data and label tensors, batch dimension first."""
    data: list
    label: list = field(default_factory=list)


class DataProvider:
    """
    Names the inputs of a batch and copies them into sliced device storage.

    Subclasses override `get_data`/`get_label` when batches are not
    `DataBatch` instances.
    """

    def __init__(self, data_names=("data",), label_names=()):
        self.data_names = list(data_names)
        self.label_names = list(label_names)

    def get_data(self, batch) -> list:
        return list(batch.data)

    def get_label(self, batch) -> list:
        return list(batch.label)

    def load_data(self, batch, targets):
        _load_general(self.get_data(batch), targets)

    def load_label(self, batch, targets):
        _load_general(self.get_label(batch), targets)


def _load_general(sources, targets):
    assert len(sources) == len(targets), (
        f"batch holds {len(sources)} tensors but {len(targets)} inputs are bound"
    )
    with torch.no_grad():
        for source, views in zip(sources, targets):
            for batch_slice, target in views:
                target.copy_(source[batch_slice])


def load_data(provider, batch, targets):
    """Scatter the batch's data tensors into `targets` (one list of views per input)."""
    provider.load_data(batch, targets)


def load_label(provider, batch, targets):
    """Scatter the batch's label tensors into `targets`."""
    provider.load_label(batch, targets)


def get_label(provider, batch) -> list:
    return provider.get_label(batch)
