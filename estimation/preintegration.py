from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np
from gtsam import Rot3

from utilities.so3 import gyro_of, right_jacobian_SO3
from logging_config import get_logger

logger = get_logger(__name__)


class InvalidDurationError(ValueError):
    """A gyro sample was given a non-positive (or non-finite) duration."""


def propagate_rotation(
    delta_R: Rot3,
    delRdelBiasOmega: np.ndarray,
    covariance: np.ndarray,
    corrected_omega: np.ndarray,
    dt: float,
    gyro_covariance: np.ndarray,
) -> Tuple[Rot3, np.ndarray, np.ndarray]:
    """
    One preintegration step, (state, sample) -> state'.

        δ          = Exp(ω' dt)
        ΔR'        = ΔR * δ
        ∂ΔR/∂b'    = δᵀ ∂ΔR/∂b - Jr(ω' dt) dt
        Σ'         = δᵀ Σ δ + Jr(ω' dt) Σ_gyro Jr(ω' dt)ᵀ dt

    The bias enters as ω' = ω_meas - b, hence the minus sign on the
    bias Jacobian increment.
    """
    theta_incr = corrected_omega * dt
    R_incr = Rot3.Expmap(theta_incr)
    Jr = right_jacobian_SO3(theta_incr)
    Ad = R_incr.matrix().T  # adjoint of δ⁻¹

    new_delta_R = delta_R.compose(R_incr)
    new_delRdelBiasOmega = Ad @ delRdelBiasOmega - Jr * dt
    new_cov = Ad @ covariance @ Ad.T + Jr @ gyro_covariance @ Jr.T * dt
    new_cov = 0.5 * (new_cov + new_cov.T)
    return new_delta_R, new_delRdelBiasOmega, new_cov


class PreintegratedRotation:
    """
    Gyro measurements between two attitude states folded into one relative
    rotation, for use in an AHRSFactor.

    Attributes:
        bias_hat               : gyro bias used while integrating (3,), fixed
        gyro_covariance        : per-sample noise density Σ_gyro (3x3), fixed
        delta_R                : accumulated rotation ΔR_ij (gtsam.Rot3)
        delta_t                : accumulated time [s]
        delRdelBiasOmega       : ∂ΔR/∂b_g at bias_hat (3x3), right-perturbation
        measurement_covariance : covariance of ΔR_ij in its tangent space (3x3)
        initial_rotation_rate  : bookkeeping only, never used in the integration
    """

    def __init__(
        self,
        bias_hat=None,
        gyro_covariance: Optional[np.ndarray] = None,
        initial_rotation_rate: Optional[np.ndarray] = None,
    ):
        self.bias_hat = gyro_of(np.zeros(3) if bias_hat is None else bias_hat)

        if gyro_covariance is None:
            gyro_covariance = np.zeros((3, 3))
        gyro_covariance = np.asarray(gyro_covariance, dtype=float)
        if gyro_covariance.shape != (3, 3):
            raise ValueError(f"gyro_covariance must be 3x3, got shape {gyro_covariance.shape}")
        self.gyro_covariance = gyro_covariance.copy()

        self.initial_rotation_rate = (
            None if initial_rotation_rate is None
            else np.asarray(initial_rotation_rate, dtype=float).reshape(3).copy()
        )
        self.reset()

    def reset(self) -> None:
        """Back to the empty preintegration (identity, zero time)."""
        self.delta_R = Rot3()
        self.delta_t = 0.0
        self.delRdelBiasOmega = np.zeros((3, 3))
        # Seeded with the per-sample noise covariance
        self.measurement_covariance = self.gyro_covariance.copy()

    # ------------- integration -------------

    def integrate_measurement(self, measured_omega: np.ndarray, delta_t: float) -> None:
        """
        Add one gyro sample, held constant over delta_t.

        Raises:
            InvalidDurationError: if delta_t <= 0. The state is left untouched.
        """
        delta_t = float(delta_t)
        if not np.isfinite(delta_t) or delta_t <= 0.0:
            raise InvalidDurationError(f"Cannot integrate over non-positive duration dt={delta_t}")

        omega = np.asarray(measured_omega, dtype=float).reshape(3)
        corrected_omega = omega - self.bias_hat

        self.delta_R, self.delRdelBiasOmega, self.measurement_covariance = propagate_rotation(
            self.delta_R,
            self.delRdelBiasOmega,
            self.measurement_covariance,
            corrected_omega,
            delta_t,
            self.gyro_covariance,
        )
        self.delta_t += delta_t

    def integrate_measurements(
        self,
        measured_omegas: Iterable[np.ndarray],
        delta_ts: Iterable[float],
        initial_rotation_rate: Optional[np.ndarray] = None,
    ) -> None:
        """
        Integrate a sequence of gyro samples in order.

        initial_rotation_rate is recorded for bookkeeping but does not
        change the result.

        All or nothing: if any sample is rejected the accumulator is left as
        it was before the call.
        """
        measured_omegas = list(measured_omegas)
        delta_ts = list(delta_ts)
        if len(measured_omegas) != len(delta_ts):
            raise ValueError(f"Got {len(measured_omegas)} gyro samples but {len(delta_ts)} durations")

        work = self.copy()
        for omega, dt in zip(measured_omegas, delta_ts):
            work.integrate_measurement(omega, dt)
        if initial_rotation_rate is not None:
            work.initial_rotation_rate = np.asarray(initial_rotation_rate, dtype=float).reshape(3).copy()

        self.__dict__.update(work.__dict__)

        logger.debug(f"Integrated {len(delta_ts)} gyro samples, Δt={self.delta_t:.4f} s, "
                     f"|ΔR|={np.linalg.norm(Rot3.Logmap(self.delta_R)):.6f} rad")

    # ------------- bias correction -------------

    def bias_delta(self, bias) -> np.ndarray:
        """δb = b - b_hat (gyro part only)."""
        return gyro_of(bias) - self.bias_hat

    def bias_corrected_delta(self, bias) -> Rot3:
        """
        ΔR re-linearised for a new bias estimate without re-integrating:

            ΔR(b) ≈ ΔR(b_hat) * Exp(∂ΔR/∂b * (b - b_hat))

        First order in (b - b_hat); the accuracy degrades as the bias moves
        away from bias_hat.
        """
        return self.delta_R.compose(Rot3.Expmap(self.delRdelBiasOmega @ self.bias_delta(bias)))

    def bias_corrected_delta_jacobian(self, bias) -> np.ndarray:
        """
        Derivative of bias_corrected_delta w.r.t. the gyro bias, as a right
        perturbation of the corrected rotation: Jr(∂ΔR/∂b δb) ∂ΔR/∂b.
        """
        return right_jacobian_SO3(self.delRdelBiasOmega @ self.bias_delta(bias)) @ self.delRdelBiasOmega

    # ------------- copying -------------

    def copy(self) -> "PreintegratedRotation":
        """Independent copy; integrating into it never touches self."""
        other = PreintegratedRotation.__new__(PreintegratedRotation)
        other.bias_hat = self.bias_hat.copy()
        other.gyro_covariance = self.gyro_covariance.copy()
        other.initial_rotation_rate = (
            None if self.initial_rotation_rate is None else self.initial_rotation_rate.copy()
        )
        other.delta_R = Rot3(self.delta_R.matrix())
        other.delta_t = self.delta_t
        other.delRdelBiasOmega = self.delRdelBiasOmega.copy()
        other.measurement_covariance = self.measurement_covariance.copy()
        return other

    def __copy__(self):
        return self.copy()

    def __deepcopy__(self, memo):
        return self.copy()

    def equals(self, other: "PreintegratedRotation", tol: float = 1e-9) -> bool:
        return (
            np.allclose(self.bias_hat, other.bias_hat, atol=tol)
            and self.delta_R.equals(other.delta_R, tol)
            and abs(self.delta_t - other.delta_t) <= tol
            and np.allclose(self.delRdelBiasOmega, other.delRdelBiasOmega, atol=tol)
            and np.allclose(self.measurement_covariance, other.measurement_covariance, atol=tol)
        )

    def __str__(self):
        return (f"PreintegratedRotation(delta_t={self.delta_t}, "
                f"theta={Rot3.Logmap(self.delta_R)}, bias_hat={self.bias_hat})")

    def __repr__(self):
        return self.__str__()


def preintegrate(
    bias_hat,
    measured_omegas: Iterable[np.ndarray],
    delta_ts: Iterable[float],
    gyro_covariance: Optional[np.ndarray] = None,
    initial_rotation_rate: Optional[np.ndarray] = None,
) -> PreintegratedRotation:
    """Fresh PreintegratedRotation with all samples integrated."""
    pim = PreintegratedRotation(bias_hat, gyro_covariance)
    pim.integrate_measurements(measured_omegas, delta_ts, initial_rotation_rate)
    return pim
