"""Exceptions raised by the executor group."""


class ExecutorGroupError(RuntimeError):
    """Base class for construction and usage failures."""


class ShapeInferenceError(ExecutorGroupError):
    """Shape inference could not determine every argument shape."""


class TypeInferenceError(ExecutorGroupError):
    """Type inference could not determine every argument type."""


class BatchSizeMismatchError(ExecutorGroupError, ValueError):
    """Provided data/label shapes disagree on the batch dimension."""


class NotBoundForTrainingError(ExecutorGroupError):
    """backward() was called on a group bound with for_training=False."""


class UnknownParameterError(ExecutorGroupError, ValueError):
    """A parameter name is not an argument or auxiliary state of the graph."""


class SharedGroupMismatchError(ExecutorGroupError, ValueError):
    """A shared group cannot lend its storage to this group."""
