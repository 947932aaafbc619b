"""Evaluation metrics fed with merged outputs and batch labels."""

import math

import torch


class EvalMetric:
    """Accumulates a metric over batches."""

    def __init__(self, name: str):
        self.name = name
        self.reset()

    def reset(self):
        self.num_inst = 0
        self.sum_metric = 0.0

    def update(self, labels, preds):
        raise NotImplementedError

    def get(self):
        if self.num_inst == 0:
            return self.name, math.nan
        return self.name, self.sum_metric / self.num_inst


class Accuracy(EvalMetric):
    """Fraction of samples whose arg-max prediction matches the label."""

    def __init__(self):
        super().__init__("accuracy")

    def update(self, labels, preds):
        for label, pred in zip(labels, preds):
            pred = pred.detach().cpu()
            label = label.detach().cpu()
            pred_label = pred.argmax(dim=1) if pred.dim() > 1 else pred.round()
            self.sum_metric += (pred_label.to(label.dtype) == label).sum().item()
            self.num_inst += label.numel()


class MSE(EvalMetric):
    """Mean squared error, averaged over batches."""

    def __init__(self):
        super().__init__("mse")

    def update(self, labels, preds):
        for label, pred in zip(labels, preds):
            label = label.detach().cpu().float()
            pred = pred.detach().cpu().float().reshape(label.shape)
            self.sum_metric += torch.mean((label - pred) ** 2).item()
            self.num_inst += 1


def update(metric: EvalMetric, labels, outputs):
    metric.update(labels, outputs)
