from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

import numpy as np
import gtsam
from gtsam import Rot3, Point3

from estimation.ahrs_factor import AHRSFactor
from estimation.preintegration import PreintegratedRotation
from utilities.config import AhrsConfig
from utilities.process_model import ProcessModel
from utilities.so3 import gyro_of
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class GyroSample:
    """One gyro sample; omega_meas is held constant until the next sample."""
    t: float
    omega_meas: np.ndarray              # 3x1 gyro measurement [rad/s]
    R_meas: Optional[Rot3] = None       # absolute attitude measurement, if any


@dataclass
class AttitudeState:
    t: float
    rot: Rot3
    gyro_bias: np.ndarray


# ----------------------------------------------------------------------
# GTSAM-based keyframe factor-graph optimizer
# ----------------------------------------------------------------------

class AhrsFGO:
    """
    GTSAM factor graph for attitude + gyro bias over a window of gyro samples.

    Nodes per keyframe k:
        X(k) : Rot3   (attitude, body to navigation)
        B(k) : Point3 (gyro bias)

    Factors:
        - AHRS factor between X(k), X(k+1), B(k) from the preintegrated gyro
          samples in between
        - bias process factor between B(k), B(k+1)
        - attitude measurement factor on X(k) where available
        - priors on X(0), B(0)

    A sample becomes a keyframe every `keyframe_stride` samples, when it
    carries an attitude measurement, and at the end of the window.
    """

    def __init__(self, config: Optional[AhrsConfig] = None, config_path: Optional[str] = None):
        self.config = config if config is not None else AhrsConfig.from_yaml(config_path)
        self.process = ProcessModel(self.config.gyro)
        self.opt = self.config.optimizer

        logger.info(f"AhrsFGO: keyframe stride {self.config.keyframe_stride}, "
                    f"robust={self.opt.use_robust} ({self.opt.robust_kernel}, k={self.opt.robust_param}), "
                    f"2nd-order Coriolis={self.config.factor.use_2nd_order_coriolis}")

    # ------------- key helpers -------------

    @staticmethod
    def X(i: int) -> int:
        return gtsam.symbol("x", i)

    @staticmethod
    def B(i: int) -> int:
        return gtsam.symbol("b", i)

    def make_robust_noise(self, base_noise):
        """
        Wrap a noise model with a robust M-estimator kernel.

        Returns:
            Robust noise model if use_robust is set, else base_noise
        """
        if not self.opt.use_robust:
            return base_noise

        if self.opt.robust_kernel == "Huber":
            mestimator = gtsam.noiseModel.mEstimator.Huber.Create(self.opt.robust_param)
        elif self.opt.robust_kernel == "Cauchy":
            mestimator = gtsam.noiseModel.mEstimator.Cauchy.Create(self.opt.robust_param)
        elif self.opt.robust_kernel == "Tukey":
            mestimator = gtsam.noiseModel.mEstimator.Tukey.Create(self.opt.robust_param)
        else:
            logger.warning(f"Unknown robust kernel '{self.opt.robust_kernel}', using Huber")
            mestimator = gtsam.noiseModel.mEstimator.Huber.Create(self.opt.robust_param)

        return gtsam.noiseModel.Robust.Create(mestimator, base_noise)

    # ------------- factor builders -------------

    def make_ahrs_factor(
        self,
        key_R_prev: int,
        key_R_curr: int,
        key_b_prev: int,
        pim: PreintegratedRotation,
    ) -> gtsam.CustomFactor:
        fcfg = self.config.factor
        factor = AHRSFactor(
            key_R_prev,
            key_R_curr,
            key_b_prev,
            pim,
            omega_coriolis=fcfg.omega_coriolis,
            body_P_sensor=fcfg.body_P_sensor,
            use_2nd_order_coriolis=fcfg.use_2nd_order_coriolis,
            bias_correction_warn=fcfg.bias_correction_warn,
        )
        return factor.to_custom_factor()

    def make_bias_factor(self, key_b_prev: int, key_b_curr: int, dt: float) -> gtsam.CustomFactor:
        """
        Bias process: b_k = Φ b_{k-1} + w,  w ~ N(0, Q_d), Φ = exp(A dt).
        (Φ = I for a pure random walk.)

        Error e = b_k - Φ b_{k-1}
        """
        Phi = self.process.bias_transition(dt)
        noise = gtsam.noiseModel.Gaussian.Covariance(self.process.bias_covariance(dt))
        keys = [key_b_prev, key_b_curr]

        def error_fn(this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None):
            b_prev = np.asarray(values.atPoint3(keys[0]), float)
            b_curr = np.asarray(values.atPoint3(keys[1]), float)
            if jacobians is not None:
                jacobians[0] = -Phi
                jacobians[1] = np.eye(3)
            return b_curr - Phi @ b_prev

        return gtsam.CustomFactor(noise, keys, error_fn)

    def make_attitude_factor(self, key_R: int, R_meas: Rot3) -> gtsam.PriorFactorRot3:
        """Absolute attitude measurement with robust M-estimator for outlier rejection."""
        sigma = self.config.attitude_std
        base_noise = gtsam.noiseModel.Isotropic.Sigma(3, sigma)
        return gtsam.PriorFactorRot3(key_R, R_meas, self.make_robust_noise(base_noise))

    # ------------- graph builder -------------

    def ordered_samples(self, samples: List[GyroSample]) -> List[GyroSample]:
        """
        Drop samples whose timestamp does not advance past the previous one.

        An attitude measurement on a dropped sample is kept on the sample
        before it if that one has none.
        """
        kept: List[GyroSample] = []
        for k, s in enumerate(samples):
            if kept and s.t <= kept[-1].t:
                logger.warning(f"Dropping gyro sample {k}: t={s.t} does not advance past t={kept[-1].t}")
                if s.R_meas is not None and kept[-1].R_meas is None:
                    kept[-1] = replace(kept[-1], R_meas=s.R_meas)
                continue
            kept.append(s)
        return kept

    def keyframe_indices(self, samples: List[GyroSample]) -> List[int]:
        stride = self.config.keyframe_stride
        last = len(samples) - 1
        return [k for k, s in enumerate(samples)
                if k == 0 or k == last or k % stride == 0 or s.R_meas is not None]

    def build_window_graph(
        self,
        samples: List[GyroSample],
        R0: Optional[Rot3] = None,
        b0: Optional[np.ndarray] = None,
    ) -> Tuple[gtsam.NonlinearFactorGraph, gtsam.Values, List[int]]:
        """
        Build graph and initial values for one window of samples.

        Initial attitudes come from chaining the preintegrated rotations
        starting at R0 (or the first attitude measurement, or identity).
        Samples that do not advance in time are dropped first, so the
        returned keyframe indices refer to ordered_samples(samples).
        """
        samples = self.ordered_samples(samples)
        graph = gtsam.NonlinearFactorGraph()
        values = gtsam.Values()
        if len(samples) == 0:
            return graph, values, []

        s0 = samples[0]
        if R0 is None:
            R0 = s0.R_meas if s0.R_meas is not None else Rot3()
        b0 = gyro_of(self.config.gyro.bias_hat if b0 is None else b0)

        keyframes = self.keyframe_indices(samples)

        values.insert(self.X(0), R0)
        values.insert(self.B(0), Point3(*b0))

        prior_R_noise = gtsam.noiseModel.Isotropic.Sigma(3, self.opt.prior_rot_sigma)
        prior_b_noise = gtsam.noiseModel.Isotropic.Sigma(3, self.opt.prior_bias_sigma)
        graph.add(gtsam.PriorFactorRot3(self.X(0), R0, prior_R_noise))
        graph.add(gtsam.PriorFactorPoint3(self.B(0), Point3(*b0), prior_b_noise))
        if s0.R_meas is not None:
            graph.add(self.make_attitude_factor(self.X(0), s0.R_meas))

        R_guess = R0
        for n in range(1, len(keyframes)):
            ka, kb = keyframes[n - 1], keyframes[n]

            pim = PreintegratedRotation(b0, self.process.gyro_covariance)
            for k in range(ka, kb):
                pim.integrate_measurement(samples[k].omega_meas, samples[k + 1].t - samples[k].t)

            R_guess = R_guess.compose(pim.delta_R)
            values.insert(self.X(n), R_guess)
            values.insert(self.B(n), Point3(*b0))

            graph.add(self.make_ahrs_factor(self.X(n - 1), self.X(n), self.B(n - 1), pim))
            graph.add(self.make_bias_factor(self.B(n - 1), self.B(n), pim.delta_t))

            if samples[kb].R_meas is not None:
                graph.add(self.make_attitude_factor(self.X(n), samples[kb].R_meas))

        logger.debug(f"Built window graph: {len(samples)} samples, {len(keyframes)} keyframes, "
                     f"{graph.size()} factors")
        return graph, values, keyframes

    # ------------- window optimization -------------

    def optimize_window(
        self,
        samples: List[GyroSample],
        R0: Optional[Rot3] = None,
        b0: Optional[np.ndarray] = None,
    ) -> List[AttitudeState]:
        """
        Build and solve the factor graph for one window.

        Returns one AttitudeState per keyframe.
        """
        samples = self.ordered_samples(samples)
        graph, values, keyframes = self.build_window_graph(samples, R0, b0)
        if graph.size() == 0:
            return []

        params = gtsam.LevenbergMarquardtParams()
        params.setMaxIterations(self.opt.max_iters)
        params.setAbsoluteErrorTol(self.opt.abs_tol)
        params.setRelativeErrorTol(self.opt.rel_tol)

        optimizer = gtsam.LevenbergMarquardtOptimizer(graph, values, params)
        result = optimizer.optimize()
        logger.info(f"Window optimized: error {graph.error(values):.6e} -> {graph.error(result):.6e} "
                    f"in {optimizer.iterations()} iterations")

        states: List[AttitudeState] = []
        for n, k in enumerate(keyframes):
            states.append(AttitudeState(
                t=float(samples[k].t),
                rot=result.atRot3(self.X(n)),
                gyro_bias=np.asarray(result.atPoint3(self.B(n)), float),
            ))
        return states
