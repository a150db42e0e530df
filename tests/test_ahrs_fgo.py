"""
Tests for the keyframe AHRS factor graph on synthetic constant-rate data.

Run with: python -m pytest tests/test_ahrs_fgo.py -v
"""

from pathlib import Path

import numpy as np
import pytest
import gtsam
from gtsam import Rot3

from estimation.ahrs_fgo import AhrsFGO, GyroSample
from run_ahrs_fgo import main, synthesize_samples
from utilities.config import AhrsConfig
from utilities.so3 import rotation_angle_deg

CONFIG_PATH = Path(__file__).resolve().parent.parent / "configs" / "config_ahrs.yaml"

OMEGA_TRUE = np.array([0.1, 0.05, -0.02])
B_TRUE = np.array([0.01, -0.005, 0.003])


def make_config(**optimizer):
    """Softer bias random walk and a loose bias prior so the data decide."""
    opt = {"use_robust": False, "prior": {"bias_sigma": 0.1}}
    opt.update(optimizer)
    return AhrsConfig.from_dict({
        "sensors": {"gyro": {"dt": 0.01, "noise": {"arw_deg": 0.15, "rrw_deg": 50.0}}},
        "optimizer": opt,
        "window": {"keyframe_stride": 10},
    })


def attitude_errors_deg(states, truth, dt):
    return np.array([rotation_angle_deg(truth[int(round(s.t / dt))], s.rot) for s in states])


def test_keyframe_indices():
    fgo = AhrsFGO(make_config())
    samples = [GyroSample(t=0.01 * k, omega_meas=np.zeros(3)) for k in range(36)]
    samples[15].R_meas = Rot3()
    assert fgo.keyframe_indices(samples) == [0, 10, 15, 20, 30, 35]


def test_graph_structure():
    config = make_config()
    fgo = AhrsFGO(config)

    samples, _ = synthesize_samples(config, 0.2, OMEGA_TRUE, B_TRUE, att_every=0, add_noise=False)
    graph, values, keyframes = fgo.build_window_graph(samples, R0=Rot3())
    assert keyframes == [0, 10, 20]
    # two priors, then an AHRS and a bias factor per interval
    assert graph.size() == 2 + 2 * 2
    assert values.size() == 2 * len(keyframes)

    samples, _ = synthesize_samples(config, 0.2, OMEGA_TRUE, B_TRUE, att_every=10, add_noise=False)
    graph, _, _ = fgo.build_window_graph(samples, R0=Rot3())
    assert graph.size() == 2 + 2 * 2 + 3


def test_initial_guess_chains_preintegrated_rotations():
    config = make_config()
    fgo = AhrsFGO(config)
    samples, truth = synthesize_samples(config, 1.0, OMEGA_TRUE, np.zeros(3), att_every=0, add_noise=False)

    _, values, keyframes = fgo.build_window_graph(samples, R0=truth[0], b0=np.zeros(3))
    for n, k in enumerate(keyframes):
        assert values.atRot3(fgo.X(n)).equals(truth[k], 1e-9)


def test_empty_window():
    fgo = AhrsFGO(make_config())
    assert fgo.optimize_window([]) == []


def test_default_config_outside_repo_root(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    fgo = AhrsFGO()
    assert fgo.config.keyframe_stride == AhrsConfig.from_yaml(str(CONFIG_PATH)).keyframe_stride


def test_repeated_timestamps_are_dropped():
    config = make_config()
    fgo = AhrsFGO(config)
    samples, truth = synthesize_samples(config, 1.0, OMEGA_TRUE, B_TRUE, att_every=50, add_noise=False)

    # repeat sample 5 and give the repeat the attitude fix
    repeat = GyroSample(t=samples[5].t, omega_meas=samples[5].omega_meas, R_meas=truth[5])
    with_repeat = samples[:6] + [repeat] + samples[6:]

    ordered = fgo.ordered_samples(with_repeat)
    assert len(ordered) == len(samples)
    assert ordered[5].R_meas is not None
    assert with_repeat[5].R_meas is None

    graph, _, keyframes = fgo.build_window_graph(with_repeat, R0=truth[0])
    assert 5 in keyframes

    states = fgo.optimize_window(with_repeat, R0=truth[0])
    assert len(states) == len(keyframes)
    assert attitude_errors_deg(states, truth, config.gyro.dt).max() < 1e-3


def test_recovers_bias_noise_free():
    config = make_config()
    fgo = AhrsFGO(config)
    samples, truth = synthesize_samples(config, 5.0, OMEGA_TRUE, B_TRUE, att_every=50, add_noise=False)

    states = fgo.optimize_window(samples, R0=truth[0])

    assert len(states) == len(fgo.keyframe_indices(samples))
    assert attitude_errors_deg(states, truth, config.gyro.dt).max() < 1e-3
    for st in states:
        np.testing.assert_allclose(st.gyro_bias, B_TRUE, atol=1e-4)


def test_noisy_estimate_is_close():
    config = make_config(use_robust=True)
    fgo = AhrsFGO(config)
    samples, truth = synthesize_samples(config, 10.0, OMEGA_TRUE, B_TRUE, att_every=100, seed=1)

    states = fgo.optimize_window(samples, R0=truth[0])

    assert attitude_errors_deg(states, truth, config.gyro.dt).mean() < 0.05
    assert np.linalg.norm(states[-1].gyro_bias - B_TRUE) < 1e-3


@pytest.mark.parametrize("use_robust, bound", [(True, 0.05), (False, None)])
def test_robust_kernel_limits_attitude_outlier(use_robust, bound):
    config = make_config(use_robust=use_robust)
    fgo = AhrsFGO(config)
    samples, truth = synthesize_samples(config, 5.0, OMEGA_TRUE, B_TRUE, att_every=50, add_noise=False)

    # 10 degree outlier on one attitude measurement
    samples[250].R_meas = truth[250].compose(Rot3.Expmap(np.array([np.deg2rad(10.0), 0.0, 0.0])))

    states = fgo.optimize_window(samples, R0=truth[0])
    at_outlier = next(s for s in states if int(round(s.t / config.gyro.dt)) == 250)
    err = rotation_angle_deg(truth[250], at_outlier.rot)

    if use_robust:
        assert err < bound
    else:
        assert err > 0.5


def test_unknown_robust_kernel_falls_back_to_huber():
    fgo = AhrsFGO(make_config(use_robust=True, robust_kernel="Welsch-ish"))
    noise = fgo.make_robust_noise(gtsam.noiseModel.Isotropic.Sigma(3, 1.0))
    assert isinstance(noise, gtsam.noiseModel.Robust)


def test_bias_factor_error():
    config = make_config()
    config.gyro.bias_tau = 50.0
    fgo = AhrsFGO(config)
    factor = fgo.make_bias_factor(fgo.B(0), fgo.B(1), 0.1)

    values = gtsam.Values()
    values.insert(fgo.B(0), gtsam.Point3(0.01, 0.0, 0.0))
    values.insert(fgo.B(1), gtsam.Point3(0.01, 0.0, 0.0))

    phi = np.exp(-0.1 / 50.0)
    np.testing.assert_allclose(factor.unwhitenedError(values), [0.01 * (1 - phi), 0.0, 0.0], atol=1e-15)


def test_cli_smoke(capsys):
    rc = main(["--config", str(CONFIG_PATH), "--duration", "1.0", "--att-every", "20", "--no-noise"])
    assert rc == 0
    out = capsys.readouterr().out
    assert "PREINTEGRATED AHRS FACTOR GRAPH" in out
    assert "Attitude Error" in out


def test_cli_default_config_outside_repo_root(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["--duration", "0.5", "--att-every", "10", "--no-noise"]) == 0
    assert "Keyframes estimated" in capsys.readouterr().out
