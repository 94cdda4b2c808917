"""Shared validators, converters and launch helpers."""

from typing import Any, Callable, Tuple, Union

import numpy as np
from attrs import Attribute, fields
from numpy import float16, float32, float64
from numpy.typing import ArrayLike, NDArray


PrecisionDType = Union[
    type[float16],
    type[float32],
    type[float64],
    np.dtype,
]

ALLOWED_PRECISIONS = {
    np.dtype(float16),
    np.dtype(float32),
    np.dtype(float64),
}

THREADS_PER_BLOCK = 128


def in_attr(name: str, attrs_class_instance: Any) -> bool:
    """Checks if a name is in the attributes of a class instance."""
    field_names = {field.name for field in
                   fields(attrs_class_instance.__class__)}
    return name in field_names or ("_" + name) in field_names


def precision_converter(value: PrecisionDType) -> type[np.floating]:
    """Return a canonical NumPy scalar type for precision configuration."""

    dtype = np.dtype(value)
    if dtype not in ALLOWED_PRECISIONS:
        raise ValueError(
            "precision must be one of float16, float32, or float64",
        )
    return dtype.type


def precision_validator(
    _: object,
    __: Attribute,
    value: PrecisionDType,
) -> None:
    """Validate that ``value`` resolves to a supported precision."""

    if np.dtype(value) not in ALLOWED_PRECISIONS:
        raise ValueError(
            "precision must be one of float16, float32, or float64",
        )


def _expect_type(name: str, value: Any, dtype: type) -> None:
    if dtype is float and isinstance(value, (int, np.integer, np.floating)):
        return
    if dtype is int and isinstance(value, np.integer):
        return
    if isinstance(value, bool) or not isinstance(value, dtype):
        raise TypeError(
            f"{name} must be {dtype.__name__}, got {type(value).__name__}"
        )


def getype_validator(dtype: type, min_: float) -> Callable:
    """Return a validator checking type and ``value >= min_``."""

    def _validator(instance, attribute, value):
        _expect_type(attribute.name, value, dtype)
        if value < min_:
            raise ValueError(
                f"{attribute.name} must be >= {min_}, got {value}"
            )

    return _validator


def gttype_validator(dtype: type, min_: float) -> Callable:
    """Return a validator checking type and ``value > min_``."""

    def _validator(instance, attribute, value):
        _expect_type(attribute.name, value, dtype)
        if value <= min_:
            raise ValueError(
                f"{attribute.name} must be > {min_}, got {value}"
            )

    return _validator


def inrangetype_validator(dtype: type, min_: float, max_: float) -> Callable:
    """Return a validator checking type and ``min_ <= value <= max_``."""

    def _validator(instance, attribute, value):
        _expect_type(attribute.name, value, dtype)
        if not (min_ <= value <= max_):
            raise ValueError(
                f"{attribute.name} must be in [{min_}, {max_}], got {value}"
            )

    return _validator


def float_array_validator(instance, attribute, value) -> None:
    """Validate that ``value`` is a one-dimensional finite float array."""

    if not isinstance(value, np.ndarray):
        raise TypeError(f"{attribute.name} must be a numpy array")
    if value.ndim != 1:
        raise ValueError(f"{attribute.name} must be one-dimensional")
    if not np.all(np.isfinite(value)):
        raise ValueError(f"{attribute.name} must contain finite values")


def tol_converter(value: ArrayLike, self_: Any) -> NDArray:
    """Convert a scalar or array tolerance to an array of length ``n``.

    Scalars are broadcast to the configured vector size. Arrays are cast to
    the configured precision but are otherwise left to the validators so a
    length mismatch is reported rather than silently padded.
    """
    precision = getattr(self_, "precision", float64)
    array = np.asarray(value, dtype=precision)
    if array.ndim == 0:
        return np.full(self_.n, array, dtype=precision)
    return array.reshape(-1)


def launch_config(
    n: int, threads_per_block: int = THREADS_PER_BLOCK
) -> Tuple[int, int]:
    """Return ``(blocks, threads)`` covering ``n`` elements in 1D."""

    threads = max(1, min(int(n), threads_per_block))
    blocks = (int(n) + threads - 1) // threads
    return max(blocks, 1), threads


def reduction_launch_config(
    n: int, threads_per_block: int = THREADS_PER_BLOCK
) -> Tuple[int, int]:
    """Return ``(blocks, threads)`` with a power-of-two block size.

    Shared-memory tree reductions halve the active threads each pass, so
    the block size must be a power of two no larger than
    ``threads_per_block``.
    """
    threads = 1
    while threads < min(int(n), threads_per_block):
        threads *= 2
    blocks = (int(n) + threads - 1) // threads
    return max(blocks, 1), threads


def unit_roundoff(precision: PrecisionDType) -> float:
    """Return the unit roundoff of ``precision`` as a Python float."""

    return float(np.finfo(precision).eps)
