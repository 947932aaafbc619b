"""Data-parallel executor groups: bind one graph on many devices and keep them in sync."""

from .distributed import (
    get_rank,
    get_world_size,
    get_local_rank,
    is_main_process,
    main_print,
    setup_distributed,
    cleanup_distributed,
)
from .errors import (
    ExecutorGroupError,
    ShapeInferenceError,
    TypeInferenceError,
    BatchSizeMismatchError,
    NotBoundForTrainingError,
    UnknownParameterError,
    SharedGroupMismatchError,
)
from .graph import Graph, GradReq
from .executor import Executor
from .splitter import split_inputs
from .grad_req import FreezePolicy, ExplicitFreeze, AttributeFreeze, freeze_policy, plan_grad_req
from .executor_group import ExecutorGroup, DataParallelExecutorGroup, SharedGroup
from .kvstore import KVStore, LocalKVStore, DistributedKVStore, create_kvstore
from .updater import SGDUpdater
from .io import DataBatch, DataProvider
from .metric import EvalMetric, Accuracy, MSE
from .utils import set_seed, global_l2_norm, available_devices
