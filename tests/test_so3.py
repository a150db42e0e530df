"""
Tests for the SO(3) helpers: right Jacobian of the exponential map, its
inverse (derivative of the logmap) and the small-angle branches.

Run with: python -m pytest tests/test_so3.py -v
"""

import numpy as np
import pytest
import gtsam
from gtsam import Rot3, Pose3, Point3

from utilities.so3 import (
    SMALL_ANGLE,
    gyro_of,
    is_rotation_matrix,
    right_jacobian_SO3,
    right_jacobian_inv_SO3,
    rot3_from,
    rotation_angle_deg,
    skew,
)


def numerical_derivative(f, x, eps=1e-6):
    """Centred finite differences of a vector function of a vector."""
    x = np.asarray(x, dtype=float)
    y0 = np.asarray(f(x), dtype=float)
    J = np.zeros((y0.size, x.size))
    for i in range(x.size):
        dx = np.zeros_like(x)
        dx[i] = eps
        J[:, i] = (np.asarray(f(x + dx)) - np.asarray(f(x - dx))) / (2 * eps)
    return J


TEST_VECTORS = [
    np.array([0.1, 0.0, 0.0]),
    np.array([0.1, 0.1, 0.0]),
    np.array([0.3, -0.2, 0.5]),
    np.array([1.2, 0.4, -0.9]),
    np.array([2e-5, -1e-5, 3e-5]),
]


def test_skew_is_cross_product():
    a = np.array([0.3, -1.0, 2.0])
    b = np.array([-0.5, 0.25, 1.5])
    np.testing.assert_allclose(skew(a) @ b, np.cross(a, b), atol=1e-15)
    np.testing.assert_allclose(skew(a).T, -skew(a), atol=0)


@pytest.mark.parametrize("theta", TEST_VECTORS)
def test_right_jacobian_matches_numerical(theta):
    """Exp(θ + δ) ≈ Exp(θ) Exp(Jr(θ) δ)"""
    R = Rot3.Expmap(theta)
    expected = numerical_derivative(
        lambda d: Rot3.Logmap(R.between(Rot3.Expmap(theta + d))), np.zeros(3))
    np.testing.assert_allclose(right_jacobian_SO3(theta), expected, atol=1e-8)


@pytest.mark.parametrize("theta", TEST_VECTORS)
def test_right_jacobian_inverse_is_inverse(theta):
    np.testing.assert_allclose(
        right_jacobian_SO3(theta) @ right_jacobian_inv_SO3(theta), np.eye(3), atol=1e-10)


def test_partial_derivative_logmap():
    """Log(Exp(θ̂) Exp(δ)) ≈ θ̂ + Jr⁻¹(θ̂) δ"""
    thetahat = np.array([0.1, 0.1, 0.0])

    expected = numerical_derivative(
        lambda d: Rot3.Logmap(Rot3.Expmap(thetahat).compose(Rot3.Expmap(d))), np.zeros(3))

    X = skew(thetahat)
    normx = np.linalg.norm(thetahat)
    closed_form = (np.eye(3) + 0.5 * X
                   + (1 / (normx * normx) - (1 + np.cos(normx)) / (2 * normx * np.sin(normx))) * X @ X)

    np.testing.assert_allclose(right_jacobian_inv_SO3(thetahat), expected, atol=1e-8)
    np.testing.assert_allclose(right_jacobian_inv_SO3(thetahat), closed_form, atol=1e-12)


def test_small_angle_branches_are_continuous():
    axis = np.array([0.48, -0.6, 0.64])
    below = axis * SMALL_ANGLE * (1 - 1e-6)
    above = axis * SMALL_ANGLE * (1 + 1e-6)
    np.testing.assert_allclose(right_jacobian_SO3(below), right_jacobian_SO3(above), atol=1e-9)
    np.testing.assert_allclose(right_jacobian_inv_SO3(below), right_jacobian_inv_SO3(above), atol=1e-9)


def test_zero_rotation_jacobians_are_identity():
    np.testing.assert_array_equal(right_jacobian_SO3(np.zeros(3)), np.eye(3))
    np.testing.assert_array_equal(right_jacobian_inv_SO3(np.zeros(3)), np.eye(3))


@pytest.mark.parametrize("alpha", [0.0, 1e-4, -3e-4])
def test_first_order_exponential(alpha):
    """Exp((ω - b - δb)Δt) ≈ Exp((ω - b)Δt) Exp(-Jr Δt δb)"""
    bias_omega = np.zeros(3)
    measured_omega = np.array([0.1, 0.0, 0.0])
    dt = 1.0
    delta_bias = np.array([alpha, alpha, alpha])

    Jr = right_jacobian_SO3((measured_omega - bias_omega) * dt)
    delRdelBiasOmega = -Jr * dt

    expected = Rot3.Expmap((measured_omega - bias_omega - delta_bias) * dt).matrix()
    hat = Rot3.Expmap((measured_omega - bias_omega) * dt).matrix()
    actual = hat @ Rot3.Expmap(delRdelBiasOmega @ delta_bias).matrix()

    # second order in δb
    np.testing.assert_allclose(actual, expected, atol=10 * alpha**2 + 1e-12)


def test_gyro_of_accepts_vectors_and_constant_bias():
    np.testing.assert_array_equal(gyro_of([0.1, 0.2, 0.3]), [0.1, 0.2, 0.3])
    np.testing.assert_array_equal(gyro_of(Point3(0.0, 0.0, 0.3)), [0.0, 0.0, 0.3])

    bias = gtsam.imuBias.ConstantBias(np.array([0.2, 0.0, 0.0]), np.array([0.0, 0.0, 0.3]))
    np.testing.assert_allclose(gyro_of(bias), [0.0, 0.0, 0.3])

    with pytest.raises(ValueError):
        gyro_of(np.zeros(6))


def test_rot3_from():
    R = Rot3.Expmap(np.array([0.0, 0.1, 0.1]))
    assert rot3_from(None).equals(Rot3(), 1e-12)
    assert rot3_from(R).equals(R, 1e-12)
    assert rot3_from(Pose3(R, Point3(1.0, 0.0, 0.0))).equals(R, 1e-12)
    assert rot3_from(R.matrix()).equals(R, 1e-12)
    with pytest.raises(ValueError):
        rot3_from(np.eye(2))


def test_rotation_helpers():
    R = Rot3.RzRyRx(0.0, np.pi / 4, 0.0)
    assert is_rotation_matrix(R.matrix())
    assert not is_rotation_matrix(2.0 * np.eye(3))
    assert abs(rotation_angle_deg(Rot3(), R) - 45.0) < 1e-9
