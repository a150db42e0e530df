from __future__ import annotations

from typing import Optional, Union

import numpy as np
from gtsam import Rot3, Pose3

# Below this rotation angle the closed forms divide (almost) by zero and the
# Taylor series are used instead.
SMALL_ANGLE = 1e-4


def skew(v: np.ndarray) -> np.ndarray:
    """Create skew-symmetric matrix [v×] from 3-vector."""
    v = np.asarray(v, dtype=float).reshape(3)
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ])


def right_jacobian_SO3(omega: np.ndarray) -> np.ndarray:
    """
    Right Jacobian of SO(3) for exponential map.
    Jr(ω) such that: Exp(ω + δω) ≈ Exp(ω) * Exp(Jr(ω) * δω)

    Args:
        omega: Rotation vector (3,)

    Returns:
        Jr: 3×3 right Jacobian matrix
    """
    omega = np.asarray(omega, dtype=float).reshape(3)
    theta = np.linalg.norm(omega)
    W = skew(omega)
    W2 = W @ W

    if theta < SMALL_ANGLE:
        # Jr ≈ I - 1/2 [ω]× + 1/6 [ω]×²
        return np.eye(3) - 0.5 * W + W2 / 6.0

    # Jr(ω) = I - (1-cos(θ))/θ² [ω]× + (θ-sin(θ))/θ³ [ω]×²
    return (np.eye(3)
            - ((1.0 - np.cos(theta)) / theta**2) * W
            + ((theta - np.sin(theta)) / theta**3) * W2)


def right_jacobian_inv_SO3(omega: np.ndarray) -> np.ndarray:
    """
    Inverse of right Jacobian of SO(3), i.e. the derivative of the logmap:
    Log(Exp(ω) * Exp(δ)) ≈ ω + Jr⁻¹(ω) * δ

    Args:
        omega: Rotation vector (3,)

    Returns:
        Jr_inv: 3×3 inverse right Jacobian matrix
    """
    omega = np.asarray(omega, dtype=float).reshape(3)
    theta = np.linalg.norm(omega)
    W = skew(omega)
    W2 = W @ W

    if theta < SMALL_ANGLE:
        # Jr⁻¹ ≈ I + 1/2 [ω]× + 1/12 [ω]×²
        return np.eye(3) + 0.5 * W + W2 / 12.0

    # Jr⁻¹(ω) = I + 0.5*[ω]× + (1/θ² - (1+cos(θ))/(2θsin(θ))) [ω]×²
    coeff = 1.0 / theta**2 - (1.0 + np.cos(theta)) / (2.0 * theta * np.sin(theta))
    return np.eye(3) + 0.5 * W + coeff * W2


# ----------------------------------------------------------------------
# Adapters between gtsam types and plain numpy
# ----------------------------------------------------------------------

def gyro_of(bias) -> np.ndarray:
    """
    Gyroscope component of a bias estimate as a float (3,) array.

    Accepts a plain 3-vector (Point3 / ndarray / list) or anything exposing
    ``gyroscope()``, e.g. gtsam.imuBias.ConstantBias.
    """
    if hasattr(bias, "gyroscope"):
        bias = bias.gyroscope()
    b = np.asarray(bias, dtype=float)
    if b.size != 3:
        raise ValueError(f"Gyro bias must have 3 components, got shape {b.shape}")
    return b.reshape(3).copy()


def rot3_from(value: Optional[Union[Rot3, Pose3, np.ndarray]]) -> Rot3:
    """Rotation part of a Rot3, Pose3 or 3×3 matrix (identity for None)."""
    if value is None:
        return Rot3()
    if isinstance(value, Rot3):
        return value
    if isinstance(value, Pose3):
        return value.rotation()
    M = np.asarray(value, dtype=float)
    if M.shape != (3, 3):
        raise ValueError(f"Expected a 3x3 rotation matrix, got shape {M.shape}")
    return Rot3(M)


def rotation_angle_deg(R_a: Rot3, R_b: Rot3) -> float:
    """Angle of the relative rotation R_a⁻¹ R_b, in degrees."""
    return float(np.rad2deg(np.linalg.norm(Rot3.Logmap(R_a.between(R_b)))))


def is_rotation_matrix(M: np.ndarray, tol: float = 1e-9) -> bool:
    """True if M is orthonormal with determinant +1."""
    M = np.asarray(M, dtype=float)
    return (M.shape == (3, 3)
            and np.allclose(M.T @ M, np.eye(3), atol=tol)
            and abs(np.linalg.det(M) - 1.0) < tol)
