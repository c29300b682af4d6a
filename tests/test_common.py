# tests/test_common.py
import math

import numpy as np
import torch
import pytest

from torch_clustering import FittedModel, InvalidParameter
from torch_clustering._common import (
    _as_matrix,
    _check_positive,
    _logsumexp_rows,
    _make_generator,
    _safe_log,
)


def test_logsumexp_matches_torch():
    a = torch.randn(20, 4, dtype=torch.float64)
    assert torch.allclose(_logsumexp_rows(a), torch.logsumexp(a, dim=1))


@pytest.mark.parametrize("offset", [-1e5, 1e5])
def test_logsumexp_does_not_overflow(offset):
    a = torch.tensor([[0.0, math.log(3.0)], [1.0, 1.0]], dtype=torch.float64) + offset
    out = _logsumexp_rows(a)
    assert torch.isfinite(out).all()
    expected = torch.tensor([math.log(4.0), 1.0 + math.log(2.0)], dtype=torch.float64) + offset
    assert torch.allclose(out, expected)


def test_logsumexp_all_minus_inf_row_is_floored():
    a = torch.full((2, 3), float("-inf"), dtype=torch.float64)
    a[1, 0] = 0.0
    out = _logsumexp_rows(a)
    assert torch.isfinite(out[0])
    assert out[1].item() == pytest.approx(0.0)


def test_safe_log_of_zero_is_finite():
    out = _safe_log(torch.zeros(3))
    assert torch.isfinite(out).all()


def test_as_matrix_reshapes_row_major():
    X = _as_matrix(2, [1, 2, 3, 4, 5, 6, 7], 3)
    assert X.dtype == torch.get_default_dtype()
    assert X.tolist() == [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]]


def test_as_matrix_keeps_float64_and_caller_buffer():
    data = np.arange(6.0)
    X = _as_matrix(3, data, 2)
    assert X.dtype == torch.float64
    X = _as_matrix(3, data, 2, dtype=torch.float32)
    assert X.dtype == torch.float32
    assert X.shape == (3, 2)
    assert np.array_equal(data, np.arange(6.0))


def test_as_matrix_rejects_short_data():
    with pytest.raises(InvalidParameter):
        _as_matrix(4, [0.0] * 7, 2)


@pytest.mark.parametrize("value", [0, -3, 1.5, True, None])
def test_check_positive_rejects(value):
    with pytest.raises(InvalidParameter):
        _check_positive("n", value)


def test_check_positive_accepts_numpy_ints():
    _check_positive("n", np.int64(4))


def test_invalid_parameter_is_a_value_error():
    assert issubclass(InvalidParameter, ValueError)


def test_make_generator():
    g = torch.Generator()
    assert _make_generator(g) is g
    a = torch.rand(3, generator=_make_generator(5))
    b = torch.rand(3, generator=_make_generator(5))
    assert torch.equal(a, b)


def test_fitted_model_is_structural():
    class Labels:
        def predicted_values(self):
            return torch.zeros(1, dtype=torch.long)

        def predict(self, num_values, data):
            return torch.zeros(num_values, dtype=torch.long)

    assert isinstance(Labels(), FittedModel)
    assert not isinstance(object(), FittedModel)
