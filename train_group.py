"""
Data-parallel training through an executor group.

Fits a linear regression on synthetic data, splitting every batch across
all visible devices (two CPU contexts when there is no GPU).

Usage:
    python train_group.py                                  # local updates
    KVSTORE=local python train_group.py                    # aggregate through a kvstore
    KVSTORE=dist_sync torchrun --nproc_per_node=2 train_group.py
"""

import json
import os
import time

import torch

from dpexec import (
    DataBatch,
    DataParallelExecutorGroup,
    DataProvider,
    Graph,
    MSE,
    SGDUpdater,
    available_devices,
    cleanup_distributed,
    create_kvstore,
    get_rank,
    get_world_size,
    global_l2_norm,
    is_main_process,
    set_seed,
    setup_distributed,
)

# -----------------
# Config
# -----------------
NUM_FEATURES = 8
BATCH_SIZE = 32
NUM_BATCHES = 50
NUM_EPOCHS = 5
LR = 0.1
MOMENTUM = 0.9
LOG_EVERY = 10
SEED = 42
KVSTORE = os.environ.get("KVSTORE")   # None, "local" or "dist_sync"
UPDATE_ON_KVSTORE = os.environ.get("UPDATE_ON_KVSTORE", "0") == "1"


# -----------------
# Graph
# -----------------
def linear_forward(args, aux, is_train):
    return [args["data"] @ args["weight"] + args["bias"]]


def linear_shapes(shapes):
    if "data" not in shapes:
        return {}
    batch, features = shapes["data"]
    return {"weight": (features, 1), "bias": (1,), "label": (batch, 1)}


def build_graph():
    return Graph(
        linear_forward,
        arguments=["data", "weight", "bias", "label"],
        outputs=["prediction"],
        shape_rule=linear_shapes,
    )


def make_batches(true_weight, num_batches):
    batches = []
    for _ in range(num_batches):
        data = torch.randn(BATCH_SIZE, NUM_FEATURES)
        label = data @ true_weight + 0.5 + 0.01 * torch.randn(BATCH_SIZE, 1)
        batches.append(DataBatch(data=[data], label=[label]))
    return batches


# -----------------
# Main
# -----------------
def main():
    if KVSTORE == "dist_sync":
        setup_distributed()

    rank = get_rank()
    world_size = get_world_size()

    # Same weights on every rank, different data per rank
    set_seed(SEED, rank=0)
    true_weight = torch.randn(NUM_FEATURES, 1)
    set_seed(SEED, rank=rank)

    devices = available_devices(min_devices=2)
    if is_main_process():
        print(f"Starting training on {len(devices)} devices x {world_size} processes")

    group = DataParallelExecutorGroup(
        build_graph(),
        devices,
        data_shapes=[("data", (BATCH_SIZE, NUM_FEATURES))],
        label_shapes=[("label", (BATCH_SIZE, 1))],
    )
    group.set_params({"weight": torch.zeros(NUM_FEATURES, 1), "bias": torch.zeros(1)}, {})
    provider = DataProvider(data_names=["data"], label_names=["label"])

    # Gradients are summed over devices (and workers), so rescale by the global batch
    updater = SGDUpdater(lr=LR, momentum=MOMENTUM, rescale_grad=1.0 / (BATCH_SIZE * world_size))
    kvstore = None
    if KVSTORE is not None:
        kvstore = create_kvstore(KVSTORE)
        if UPDATE_ON_KVSTORE:
            kvstore.set_updater(updater)
        group.init_kvstore(kvstore)
    elif UPDATE_ON_KVSTORE:
        raise ValueError("UPDATE_ON_KVSTORE=1 needs KVSTORE to be set")

    batches = make_batches(true_weight, NUM_BATCHES)
    metric = MSE()
    step = 0
    start_time = time.time()

    for epoch in range(NUM_EPOCHS):
        metric.reset()
        for batch in batches:
            group.forward(provider, batch, is_train=True)

            # d/dpred of 0.5 * (pred - label)^2
            prediction = group.get_outputs()[0]
            out_grad = prediction - batch.label[0].to(prediction.device)
            group.backward(out_grad)

            grad_norm = global_l2_norm(g for block in group.grad_arrays for g in block)
            group.update_params(updater, UPDATE_ON_KVSTORE, kvstore)
            group.update_metric(metric, provider, batch)

            if is_main_process() and step % LOG_EVERY == 0:
                name, value = metric.get()
                record = {
                    "step": step,
                    "epoch": epoch,
                    name: value,
                    "grad_norm": grad_norm,
                    "elapsed": time.time() - start_time,
                }
                print(json.dumps(record))
            step += 1

    arg_params, _ = group.get_params()
    if is_main_process():
        error = (arg_params["weight"] - true_weight).abs().max().item()
        print(f"Training complete. max |weight - true_weight| = {error:.4f}")

    cleanup_distributed()


if __name__ == "__main__":
    main()
