import numpy as np
import scipy.linalg

from utilities.config import GyroConfig
from logging_config import get_logger

logger = get_logger(__name__)


class ProcessModel:
    """
    Gyro noise model for attitude preintegration:

        ω_meas = ω + b_g + n_g,     n_g ~ N(0, σ_g² I_3)
        ḃ_g    = -b_g / τ + w_bg,   w_bg ~ N(0, σ_bg² I_3)

    (τ = ∞ gives a pure random walk on the bias.)

    σ_g² I is the continuous-time noise density Σ_gyro that the preintegrator
    scales by Δt each step. The bias block is discretised with Van Loan's
    method using scipy.linalg.expm.
    """

    def __init__(self, config: GyroConfig) -> None:
        # ---- Angle Random Walk (gyro white noise) ----
        # ARW [deg/√h] → σ_g [rad/√s]: multiply by (π/180) and divide by √3600 = 60
        self.sigma_g = config.arw_deg * (np.pi / 180.0) / 60.0

        # ---- Rate Random Walk (bias drift) ----
        # RRW [deg/h/√h] → σ_bg [rad/s/√s]:
        #   - deg/h to rad/s: multiply by (π/180)/3600
        #   - 1/√h to 1/√s: divide by √3600 = 60
        self.sigma_bg = config.rrw_deg * (np.pi / 180.0) / 3600.0 / 60.0

        self.bias_tau = config.bias_tau
        self.noise_scale = config.noise_scale

        # per-sample std at the configured rate
        self.gyro_std = self.sigma_g / np.sqrt(config.dt)

        logger.info(f"ProcessModel initialized with σ_g={self.sigma_g:.6e} rad/√s, "
                    f"σ_bg={self.sigma_bg:.6e} rad/s/√s, gyro_std={self.gyro_std:.6e} rad/s")

    @property
    def gyro_covariance(self) -> np.ndarray:
        """Continuous-time gyro noise density Σ_gyro (3x3) [rad²/s]."""
        return (self.sigma_g ** 2) * self.noise_scale * np.eye(3)

    @property
    def Q_c(self) -> np.ndarray:
        """Continuous-time bias driving noise covariance (3x3)."""
        return (self.sigma_bg ** 2) * self.noise_scale * np.eye(3)

    def A(self) -> np.ndarray:
        """Bias dynamics matrix (3x3)."""
        if self.bias_tau is None:
            return np.zeros((3, 3))
        return -np.eye(3) / self.bias_tau

    def bias_transition(self, dt: float) -> np.ndarray:
        """Discrete bias transition exp(A dt)."""
        return scipy.linalg.expm(self.A() * dt)

    def bias_covariance(self, dt: float) -> np.ndarray:
        """
        Uses Van Loan's method to compute the discrete-time bias covariance:

            Q_d = ∫₀^Δt exp(A τ) Q_c exp(Aᵀ τ) dτ
        """
        if dt <= 0:
            raise ValueError(f"dt must be positive, got {dt}")
        n = 3
        A = self.A()

        VanLoan = np.block([
            [-A,               self.Q_c],
            [np.zeros((n, n)), A.T]
        ]) * dt

        exp_VL = scipy.linalg.expm(VanLoan)

        # Q_d = Φ · (top-right block), Φ = exp(A dt)
        Phi = exp_VL[n:2*n, n:2*n].T
        Q_d = Phi @ exp_VL[0:n, n:2*n]
        return 0.5 * (Q_d + Q_d.T)
