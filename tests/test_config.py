from pathlib import Path

import numpy as np
import pytest
import yaml

from vio_state.config import build_filter_state, config_from_dict, load_config
from vio_state.depth_map import DepthType
from vio_state.state import ExtrinsicsSource


REPO_CONFIG = Path(__file__).resolve().parent.parent / "configs" / "filter_state.yaml"


def _write(tmp_path, doc) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(doc))
    return str(path)


def test_repo_config_builds_consistent_filter():
    cfg = load_config(str(REPO_CONFIG))
    fs = build_filter_state(cfg)

    assert fs.n_max == cfg.n_max == 25
    assert fs.state.aux.depth_map.type == DepthType.INVERSE
    assert fs.cov.shape == (fs.D, fs.D)
    assert fs.noise.D == fs.D
    assert fs.check_covariance() == []


def test_load_config_two_cameras_fixed_extrinsics(tmp_path):
    R_CM = [[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]]  # 90° about z
    path = _write(tmp_path, {
        "filter": {"n_max": 6, "n_cam": 2, "depth_type": "log", "do_ve_calibration": False},
        "extrinsics": [
            {"q_CM": [1.0, 0.0, 0.0, 0.0], "MrMC": [0.1, 0.0, 0.0]},
            {"R_CM": R_CM, "MrMC": [-0.1, 0.0, 0.0]},
        ],
        "init_covariance": {"pos": 0.5},
        "feature_init_covariance": {"depth": 0.2, "bearing": 0.03},
        "process_noise": {"dep": 2e-4},
    })
    cfg = load_config(path)
    fs = build_filter_state(cfg)

    assert cfg.depth_type == DepthType.LOG
    assert fs.state.extrinsics_source is ExtrinsicsSource.FIXED
    assert np.allclose(fs.state.camera_offset(1), [-0.1, 0.0, 0.0])
    q = fs.state.camera_orientation(1)
    assert np.allclose(q, [np.cos(np.pi / 4), 0.0, 0.0, np.sin(np.pi / 4)])
    # Fixed values also seed the estimated blocks
    assert np.allclose(fs.state.get("vep", 0), [0.1, 0.0, 0.0])

    pos = fs.state.layout.error_slice("pos")
    assert np.allclose(fs.cov[pos, pos], 0.5 * np.eye(3))
    assert np.allclose(cfg.feature_init_covariance(), np.diag([0.2, 0.03, 0.03]))
    dep = fs.noise.index("dep", 5)
    assert fs.noise.cov[dep, dep] == pytest.approx(2e-4)


def test_defaults_when_sections_missing():
    cfg = config_from_dict({})
    assert cfg.n_max == 25
    assert cfg.n_cam == 1
    assert cfg.depth_type == DepthType.INVERSE
    assert cfg.do_ve_calibration is True
    fs = build_filter_state(cfg)
    assert np.allclose(fs.state.camera_orientation(0), [1.0, 0.0, 0.0, 0.0])


@pytest.mark.parametrize("doc", [
    {"filter": {"depth_type": "cubic"}},
    {"filter": {"depth_type": 9}},
    {"filter": {"n_max": 0}},
    {"filter": {"n_cam": 1}, "extrinsics": [{}, {}]},
    {"extrinsics": [{"R_CM": [[1.0, 0.0], [0.0, 1.0]]}]},
    {"extrinsics": [{"q_CM": [0.0, 0.0, 0.0, 0.0]}]},
    {"init_covariance": {"dep": 1.0}},
    {"init_covariance": {"pos": -1.0}},
    {"process_noise": {"bogus": 1.0}},
    {"feature_init_covariance": {"depth": 0.0}},
    {"filter": {"do_ve_calibration": "false"}},
    {"filter": {"use_prediction_merge": 1}},
    {"filter": {"verbose": "yes"}},
])
def test_invalid_configs_fail_at_load(tmp_path, doc):
    path = _write(tmp_path, doc)
    with pytest.raises(ValueError):
        load_config(path)


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "missing.yaml"))
