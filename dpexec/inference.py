"""Shape and type resolution, globally and per device."""

from dataclasses import dataclass

from .errors import BatchSizeMismatchError, ShapeInferenceError, TypeInferenceError


@dataclass
class Resolution:
    """Inferred shapes and types of every argument, output and aux state."""
    arg_shapes: list
    out_shapes: list
    aux_shapes: list
    arg_types: list
    out_types: list
    aux_types: list


def check_batch_size(data_shapes: dict, label_shapes: dict) -> int:
    """Return the common batch size (leading dimension) of all inputs."""
    shapes = list(data_shapes.items()) + list(label_shapes.items())
    assert shapes, "at least one data shape is required"
    batch_size = shapes[0][1][0]
    for name, shape in shapes:
        if shape[0] != batch_size:
            raise BatchSizeMismatchError(
                f"'{name}' has batch size {shape[0]}, expected {batch_size}"
            )
    return batch_size


def device_shapes(shapes: dict, slice_len: int) -> dict:
    """Replace the batch dimension of every shape with `slice_len`."""
    return {name: (slice_len,) + tuple(shape[1:]) for name, shape in shapes.items()}


def _infer_shape(graph, provided: dict, where: str):
    arg_shapes, out_shapes, aux_shapes = graph.infer_shape(provided)
    if arg_shapes is None:
        raise ShapeInferenceError(
            f"Information not enough to perform complete shape inference ({where}); "
            f"provided: {sorted(provided)}"
        )
    return arg_shapes, out_shapes, aux_shapes


def resolve_global(graph, data_shapes: dict, label_shapes: dict, provided_types: dict) -> Resolution:
    """Infer canonical shapes and types for the full batch."""
    arg_shapes, out_shapes, aux_shapes = _infer_shape(
        graph, {**data_shapes, **label_shapes}, "global"
    )
    arg_types, out_types, aux_types = graph.infer_type(provided_types)
    if arg_types is None:
        raise TypeInferenceError(
            f"Information not enough to perform complete type inference; "
            f"provided: {sorted(provided_types)}"
        )
    return Resolution(arg_shapes, out_shapes, aux_shapes, arg_types, out_types, aux_types)


def resolve_device(graph, data_shapes: dict, label_shapes: dict, slice_len: int):
    """Infer concrete (arg, out, aux) shapes for a device holding `slice_len` samples."""
    provided = {
        **device_shapes(data_shapes, slice_len),
        **device_shapes(label_shapes, slice_len),
    }
    return _infer_shape(graph, provided, f"device slice of {slice_len}")
