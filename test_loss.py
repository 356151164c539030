"""Loss values, derivatives and name lookup."""

import math

import pytest

from fmembed.errors import ConfigError
from fmembed.loss import Loss, get_loss


class TestLogistic:

    def test_value_and_derivative_at_zero(self):
        assert Loss.LOGISTIC.loss(0.0, 1.0) == pytest.approx(math.log(2))
        assert Loss.LOGISTIC.derivative(0.0, 1.0) == pytest.approx(-0.5)
        assert Loss.LOGISTIC.derivative(0.0, -1.0) == pytest.approx(0.5)

    def test_confident_prediction_small_loss(self):
        assert Loss.LOGISTIC.loss(10.0, 1.0) < 1e-4
        assert Loss.LOGISTIC.loss(-10.0, 1.0) > 9.9


class TestHinge:

    def test_three_regions(self):
        assert Loss.HINGE.loss(-1.0, 1.0) == pytest.approx(1.5)
        assert Loss.HINGE.loss(0.5, 1.0) == pytest.approx(0.125)
        assert Loss.HINGE.loss(2.0, 1.0) == 0.0

    def test_derivative(self):
        assert Loss.HINGE.derivative(-1.0, 1.0) == pytest.approx(-1.0)
        assert Loss.HINGE.derivative(0.5, 1.0) == pytest.approx(-0.5)
        assert Loss.HINGE.derivative(2.0, 1.0) == 0.0


class TestMse:

    def test_value_and_derivative(self):
        assert Loss.MSE.loss(3.0, 1.0) == pytest.approx(4.0)
        assert Loss.MSE.derivative(3.0, 1.0) == pytest.approx(4.0)


class TestLookup:

    @pytest.mark.parametrize("name,kind", [
        ("logistic", Loss.LOGISTIC), (" Hinge ", Loss.HINGE),
        ("MSE", Loss.MSE)])
    def test_names(self, name, kind):
        assert get_loss(name) is kind

    def test_unknown_name(self):
        with pytest.raises(ConfigError, match="Invalid loss function"):
            get_loss("cross-entropy")
