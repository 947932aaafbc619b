"""Shared configuration for the executor group."""

import torch

# -----------------
# Gradients
# -----------------
DEFAULT_GRAD_REQ = "write"     # one of "write", "add", "null"

# Attribute convention for freezing parameters: "<param>_grad" = "freeze"
FREEZE_ATTR_SUFFIX = "_grad"
FREEZE_ATTR_VALUE = "freeze"

# -----------------
# Storage
# -----------------
DEFAULT_DTYPE = torch.float32
HOST_DEVICE = torch.device("cpu")

# -----------------
# Distributed
# -----------------
DIST_BACKEND = "gloo"          # kvstore buffers live on the host
