from __future__ import annotations

from typing import List, Optional

import numpy as np
import gtsam
from gtsam import Rot3, Pose3

from estimation.preintegration import PreintegratedRotation
from utilities.so3 import skew, right_jacobian_SO3, right_jacobian_inv_SO3, rot3_from
from logging_config import get_logger

logger = get_logger(__name__)


class AHRSFactor:
    """
    Attitude-only preintegrated gyro factor between X(i), X(j) and B(i).

    Variables:
        rot_i, rot_j : gtsam.Rot3, attitude (body to navigation frame)
        bias         : gyro bias, 3-vector (Point3 in gtsam.Values)

    Error e ∈ R^3:
        R_bc  = ΔR * Exp(∂ΔR/∂b * (b - b_hat))          bias-corrected ΔR
        θ_bcc = Log(R_bc) - c                           Coriolis-corrected
        P     = R_bsᵀ * R_iᵀ * R_j * R_bs               predicted ΔR (sensor frame)
        e     = Log(Exp(θ_bcc)⁻¹ * P)

    with c = u = R_bsᵀ R_iᵀ ω_coriolis Δt, or c = u - ½ Log(R_bc) × u when
    the second-order Coriolis term is enabled. R_bs is the sensor-to-body
    rotation (identity when no body_P_sensor is given).

    Evaluation leaves the snapshot and settings untouched. The only state it
    changes is a flag that stops the bias-drift warning from repeating.
    """

    def __init__(
        self,
        rot_i: int,
        rot_j: int,
        bias: int,
        preintegrated: PreintegratedRotation,
        omega_coriolis: Optional[np.ndarray] = None,
        body_P_sensor: Optional[Pose3 | Rot3] = None,
        use_2nd_order_coriolis: bool = False,
        bias_correction_warn: Optional[float] = None,
    ):
        self.keys = [rot_i, rot_j, bias]
        # own the snapshot; the caller may keep integrating into theirs
        self.preintegrated = preintegrated.copy()
        self.omega_coriolis = (
            np.zeros(3) if omega_coriolis is None
            else np.asarray(omega_coriolis, dtype=float).reshape(3).copy()
        )
        self.body_P_sensor = body_P_sensor
        self.body_R_sensor = rot3_from(body_P_sensor)
        self.use_2nd_order_coriolis = bool(use_2nd_order_coriolis)
        self.bias_correction_warn = bias_correction_warn
        self._warned = False

    @property
    def rot_i(self) -> int:
        return self.keys[0]

    @property
    def rot_j(self) -> int:
        return self.keys[1]

    @property
    def bias(self) -> int:
        return self.keys[2]

    # ------------- error -------------

    def coriolis_correction(self, rot_i: Rot3, theta_bc: np.ndarray):
        """
        Earth-rate correction c subtracted from Log(R_bc), with its partials.

        Returns:
            c       : correction (3,)
            dc_du   : ∂c/∂u, u = R_bsᵀ R_iᵀ ω_coriolis Δt
            dc_dth  : ∂c/∂θ_bc
            u       : the first-order term
        """
        R_bs = self.body_R_sensor.matrix()
        u = R_bs.T @ rot_i.matrix().T @ self.omega_coriolis * self.preintegrated.delta_t

        if not self.use_2nd_order_coriolis:
            return u, np.eye(3), np.zeros((3, 3)), u

        # Body keeps rotating over the interval: ∫ Exp(-s θ) u ds ≈ u - ½ θ × u
        c = u - 0.5 * np.cross(theta_bc, u)
        dc_du = np.eye(3) - 0.5 * skew(theta_bc)
        dc_dth = 0.5 * skew(u)
        return c, dc_du, dc_dth, u

    def evaluate_error(
        self,
        rot_i: Rot3,
        rot_j: Rot3,
        bias,
        jacobians: Optional[List[np.ndarray]] = None,
    ) -> np.ndarray:
        """
        Residual for the given attitude and bias values.

        If `jacobians` is a list of length 3 it is filled with ∂e/∂rot_i,
        ∂e/∂rot_j (right perturbations R ← R Exp(δ)) and ∂e/∂b (3x3 each).
        """
        pim = self.preintegrated
        delta_bias = pim.bias_delta(bias)
        self._check_linearisation(delta_bias)

        # Bias-corrected preintegrated rotation
        R_bc = pim.bias_corrected_delta(bias)
        theta_bc = Rot3.Logmap(R_bc)

        # Coriolis correction in the tangent space
        c, dc_du, dc_dth, u = self.coriolis_correction(rot_i, theta_bc)
        theta_bcc = theta_bc - c
        R_bcc = Rot3.Expmap(theta_bcc)

        # Predicted relative rotation, expressed in the sensor frame
        R_bs = self.body_R_sensor
        predicted = R_bs.inverse().compose(rot_i.between(rot_j)).compose(R_bs)

        fRhat = R_bcc.between(predicted)
        e = np.array(Rot3.Logmap(fRhat), float)

        if jacobians is not None:
            Jrinv_e = right_jacobian_inv_SO3(e)
            Jr_theta_bcc = right_jacobian_SO3(theta_bcc)
            R_bs_T = R_bs.matrix().T
            fRhat_T = fRhat.matrix().T
            P_T = predicted.matrix().T

            # e depends on θ_bcc through Exp(θ_bcc)⁻¹: ∂e/∂θ_bcc
            de_dtheta_bcc = -Jrinv_e @ fRhat_T @ Jr_theta_bcc

            # --- Jacobian w.r.t R_i ---
            # P ← P Exp(-Pᵀ R_bsᵀ δ), and u ← u + [u]× R_bsᵀ δ
            du_drot_i = skew(u) @ R_bs_T
            J_rot_i = -Jrinv_e @ P_T @ R_bs_T - de_dtheta_bcc @ dc_du @ du_drot_i

            # --- Jacobian w.r.t R_j ---
            # P ← P Exp(R_bsᵀ δ)
            J_rot_j = Jrinv_e @ R_bs_T

            # --- Jacobian w.r.t bias ---
            # R_bc ← R_bc Exp(Jr(∂ΔR/∂b δb) ∂ΔR/∂b db), θ_bc ← θ_bc + Jr⁻¹(θ_bc) (...)
            dtheta_bc_db = right_jacobian_inv_SO3(theta_bc) @ pim.bias_corrected_delta_jacobian(bias)
            J_bias = de_dtheta_bcc @ (np.eye(3) - dc_dth) @ dtheta_bc_db

            jacobians[0] = J_rot_i
            jacobians[1] = J_rot_j
            jacobians[2] = J_bias

        return e

    def _check_linearisation(self, delta_bias: np.ndarray) -> None:
        if self.bias_correction_warn is None or self._warned:
            return
        if np.linalg.norm(delta_bias) > self.bias_correction_warn:
            logger.warning(f"Gyro bias moved {np.linalg.norm(delta_bias):.3e} rad/s from the "
                           f"preintegration point; first-order correction may be inaccurate")
            self._warned = True

    # ------------- gtsam glue -------------

    def noise_model(self) -> gtsam.noiseModel.Base:
        """Gaussian noise model from the preintegrated measurement covariance."""
        return gtsam.noiseModel.Gaussian.Covariance(self.preintegrated.measurement_covariance)

    def to_custom_factor(self, noise_model: Optional[gtsam.noiseModel.Base] = None) -> gtsam.CustomFactor:
        """Wrap as a gtsam.CustomFactor over [rot_i, rot_j, bias(Point3)]."""
        if noise_model is None:
            noise_model = self.noise_model()
        keys = list(self.keys)

        def error_fn(this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None):
            rot_i = values.atRot3(keys[0])
            rot_j = values.atRot3(keys[1])
            bias = np.asarray(values.atPoint3(keys[2]), float)
            return self.evaluate_error(rot_i, rot_j, bias, jacobians)

        return gtsam.CustomFactor(noise_model, keys, error_fn)

    def __str__(self):
        return (f"AHRSFactor(keys={self.keys}, "
                f"omega_coriolis={self.omega_coriolis}, "
                f"2nd_order={self.use_2nd_order_coriolis}, {self.preintegrated})")

    def __repr__(self):
        return self.__str__()
