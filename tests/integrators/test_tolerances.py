import numpy as np
import pytest
from numba import cuda

from cubdf.errors import DimensionMismatch, InvalidTolerance
from cubdf.integrators.tolerances import ErrorWeights, validate_tolerances


@pytest.mark.parametrize(
    "rtol, atol",
    [
        (1e-6, [1e-8, 0.0]),
        (0.0, [1e-8, 1e-6]),
        (1e-3, [0.0, 0.0]),
    ],
)
def test_valid_tolerances_pass(rtol, atol):
    validate_tolerances(rtol, np.asarray(atol), 2)


@pytest.mark.parametrize(
    "rtol, atol",
    [
        (-1e-6, [1e-8, 1e-8]),
        (1e-6, [1e-8, -1e-8]),
        (0.0, [1e-8, 0.0]),
    ],
)
def test_invalid_tolerances_raise(rtol, atol):
    with pytest.raises(InvalidTolerance):
        validate_tolerances(rtol, np.asarray(atol), 2)


def test_tolerance_length_mismatch():
    with pytest.raises(DimensionMismatch):
        validate_tolerances(1e-6, np.array([1e-8, 1e-8, 1e-8]), 2)


@pytest.fixture(scope="function")
def weight_vectors(precision):
    y = np.array([1.0, -2.0, 0.0, 1e3], dtype=precision)
    atol = np.array([1e-6, 1e-6, 1e-4, 1e-8], dtype=precision)
    return (
        y,
        atol,
        cuda.to_device(y),
        cuda.to_device(atol),
        cuda.device_array(4, dtype=precision),
    )


def test_weights_match_formula(precision, tolerance, weight_vectors):
    y, atol, d_y, d_atol, d_weights = weight_vectors
    rtol = 1e-3
    factory = ErrorWeights(precision, 4, rtol)
    factory.evaluate(d_y, d_atol, d_weights)
    expected = 1.0 / (rtol * np.abs(y) + atol)
    np.testing.assert_allclose(
        d_weights.copy_to_host(), expected, rtol=tolerance.rel_tight
    )
    assert np.all(d_weights.copy_to_host() > 0)


def test_weights_are_idempotent(precision, weight_vectors):
    _, _, d_y, d_atol, d_weights = weight_vectors
    factory = ErrorWeights(precision, 4, 1e-3)
    factory.evaluate(d_y, d_atol, d_weights)
    first = d_weights.copy_to_host()
    factory.evaluate(d_y, d_atol, d_weights)
    np.testing.assert_array_equal(d_weights.copy_to_host(), first)


def test_zero_denominator_raises(precision):
    factory = ErrorWeights(precision, 2, 1e-3)
    d_y = cuda.to_device(np.array([0.0, 1.0], dtype=precision))
    d_atol = cuda.to_device(np.zeros(2, dtype=precision))
    d_weights = cuda.device_array(2, dtype=precision)
    with pytest.raises(InvalidTolerance):
        factory.evaluate(d_y, d_atol, d_weights)
    # The flag is cleared before every launch
    d_y.copy_to_device(np.array([1.0, 1.0], dtype=precision))
    factory.evaluate(d_y, d_atol, d_weights)
    np.testing.assert_allclose(d_weights.copy_to_host(), [1e3, 1e3])


def test_properties():
    factory = ErrorWeights(np.float32, 7, 1e-4)
    assert factory.n == 7
    assert factory.rtol == 1e-4
    assert factory.precision is np.float32
