from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np
import yaml
from gtsam import Rot3, Pose3, Point3

from logging_config import get_logger

logger = get_logger(__name__)

# Shipped next to the sources; absent from an installed wheel, see AhrsConfig.from_yaml
DEFAULT_CONFIG = str(Path(__file__).resolve().parent.parent / "configs" / "config_ahrs.yaml")


def load_yaml(path: str) -> dict:
    """Load a YAML file and return its contents as a dictionary"""
    with open(path, 'r') as file:
        data = yaml.safe_load(file)
    return data or {}


def _vec3(value: Any, name: str) -> np.ndarray:
    v = np.asarray(value if value is not None else np.zeros(3), dtype=float)
    if v.size != 3:
        raise ValueError(f"'{name}' must have 3 components, got {value!r}")
    return v.reshape(3)


@dataclass
class GyroConfig:
    """Gyro noise specification (datasheet units, as in the config file)."""
    dt: float = 0.01                    # sample interval [s]
    arw_deg: float = 0.15               # angle random walk [deg/√h]
    rrw_deg: float = 0.5                # rate random walk [deg/h/√h]
    bias_tau: Optional[float] = None    # Gauss-Markov time constant [s], None = random walk
    noise_scale: float = 1.0
    bias_hat: np.ndarray = field(default_factory=lambda: np.zeros(3))

    @classmethod
    def from_dict(cls, d: dict) -> "GyroConfig":
        noise = d.get("noise", {}) or {}
        tau = noise.get("bias_tau")
        cfg = cls(
            dt=float(d.get("dt", cls.dt)),
            arw_deg=float(noise.get("arw_deg", cls.arw_deg)),
            rrw_deg=float(noise.get("rrw_deg", cls.rrw_deg)),
            bias_tau=None if tau is None else float(tau),
            noise_scale=float(noise.get("noise_scale", cls.noise_scale)),
            bias_hat=_vec3(d.get("bias_hat"), "sensors.gyro.bias_hat"),
        )
        if cfg.dt <= 0:
            raise ValueError(f"sensors.gyro.dt must be > 0, got {cfg.dt}")
        if cfg.bias_tau is not None and cfg.bias_tau <= 0:
            raise ValueError(f"sensors.gyro.noise.bias_tau must be > 0 or null, got {cfg.bias_tau}")
        return cfg


@dataclass
class FactorConfig:
    omega_coriolis: np.ndarray = field(default_factory=lambda: np.zeros(3))
    use_2nd_order_coriolis: bool = False
    sensor_rotvec: Optional[np.ndarray] = None
    sensor_translation: Optional[np.ndarray] = None
    bias_correction_warn: float = 0.01  # rad/s

    @classmethod
    def from_dict(cls, d: dict) -> "FactorConfig":
        bPs = d.get("body_P_sensor")
        rotvec = translation = None
        if bPs is not None:
            rotvec = _vec3(bPs.get("rotvec"), "factor.body_P_sensor.rotvec")
            translation = _vec3(bPs.get("translation"), "factor.body_P_sensor.translation")
        return cls(
            omega_coriolis=_vec3(d.get("omega_coriolis"), "factor.omega_coriolis"),
            use_2nd_order_coriolis=bool(d.get("use_2nd_order_coriolis", False)),
            sensor_rotvec=rotvec,
            sensor_translation=translation,
            bias_correction_warn=float(d.get("bias_correction_warn", cls.bias_correction_warn)),
        )

    @property
    def body_P_sensor(self) -> Optional[Pose3]:
        """Sensor pose in the body frame, or None if sensor and body coincide."""
        if self.sensor_rotvec is None:
            return None
        return Pose3(Rot3.Expmap(self.sensor_rotvec), Point3(*self.sensor_translation))


@dataclass
class OptimizerConfig:
    max_iters: int = 100
    abs_tol: float = 1e-9
    rel_tol: float = 1e-9
    use_robust: bool = True
    robust_kernel: str = "Huber"   # Options: "Huber", "Cauchy", "Tukey"
    robust_param: float = 1.345
    prior_rot_sigma: float = 0.01    # rad
    prior_bias_sigma: float = 1e-3   # rad/s

    @classmethod
    def from_dict(cls, d: dict) -> "OptimizerConfig":
        prior = d.get("prior", {}) or {}
        return cls(
            max_iters=int(d.get("max_iters", cls.max_iters)),
            abs_tol=float(d.get("abs_tol", cls.abs_tol)),
            rel_tol=float(d.get("rel_tol", cls.rel_tol)),
            use_robust=bool(d.get("use_robust", cls.use_robust)),
            robust_kernel=str(d.get("robust_kernel", cls.robust_kernel)),
            robust_param=float(d.get("robust_param", cls.robust_param)),
            prior_rot_sigma=float(prior.get("rot_sigma", cls.prior_rot_sigma)),
            prior_bias_sigma=float(prior.get("bias_sigma", cls.prior_bias_sigma)),
        )


@dataclass
class AhrsConfig:
    """Everything read from the YAML configuration file."""
    gyro: GyroConfig = field(default_factory=GyroConfig)
    factor: FactorConfig = field(default_factory=FactorConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    attitude_std: float = 1e-4       # absolute attitude measurement noise [rad]
    keyframe_stride: int = 10        # gyro samples per AHRS factor

    @classmethod
    def from_dict(cls, d: dict) -> "AhrsConfig":
        sensors = d.get("sensors", {}) or {}
        attitude = (sensors.get("attitude", {}) or {}).get("noise", {}) or {}
        window = d.get("window", {}) or {}
        cfg = cls(
            gyro=GyroConfig.from_dict(sensors.get("gyro", {}) or {}),
            factor=FactorConfig.from_dict(d.get("factor", {}) or {}),
            optimizer=OptimizerConfig.from_dict(d.get("optimizer", {}) or {}),
            attitude_std=float(attitude.get("std", cls.attitude_std)),
            keyframe_stride=int(window.get("keyframe_stride", cls.keyframe_stride)),
        )
        if cfg.keyframe_stride < 1:
            raise ValueError(f"window.keyframe_stride must be >= 1, got {cfg.keyframe_stride}")
        return cfg

    @classmethod
    def from_yaml(cls, path: Optional[str] = None) -> "AhrsConfig":
        """
        Load from `path`, or from the shipped default file when path is None.

        An explicit path that does not exist raises FileNotFoundError. A
        missing default file (e.g. an installed wheel) gives the built-in
        defaults.
        """
        if path is None:
            if not Path(DEFAULT_CONFIG).is_file():
                logger.warning(f"Default config {DEFAULT_CONFIG} not found, using built-in defaults")
                return cls()
            path = DEFAULT_CONFIG
        logger.info(f"Loading AHRS configuration from {path}")
        return cls.from_dict(load_yaml(path))
