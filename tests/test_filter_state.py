import math

import numpy as np
import pytest

from vio_state.depth_map import DepthType
from vio_state.filter_state import FilterState
from vio_state.math_utils import quat_inverse, quat_normalize, quat_rotate
from vio_state.state import ExtrinsicsSource, PredictionMeas


def _random_spd(n: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(n, n))
    return A @ A.T + n * np.eye(n)


def _make_filter(n_max: int = 4, n_cam: int = 1, depth_type=DepthType.INVERSE) -> FilterState:
    fs = FilterState(n_max=n_max, n_cam=n_cam, depth_type=depth_type)
    fs.cov = _random_spd(fs.D)
    for slot in range(n_max):
        fs.remove_feature(slot)
    return fs


INIT_COV = np.array([
    [0.10, 0.002, -0.001],
    [0.002, 0.01, 0.0005],
    [-0.001, 0.0005, 0.02],
])


def test_single_slot_scenario():
    fs = FilterState(n_max=1, n_cam=1, depth_type=DepthType.REGULAR)
    fs.initialize_feature(0, np.array([0.0, 0.0, 1.0]), 2.0, np.diag([0.1, 0.01, 0.01]))

    assert fs.state.feature_depth(0) == pytest.approx(2.0)
    bearing = fs.state.feature_bearing(0)
    assert np.linalg.norm(bearing) == pytest.approx(1.0)
    assert np.allclose(bearing, [0.0, 0.0, 1.0])

    fs.remove_feature(0)
    dep = fs.state.layout.error_index("dep", 0)
    assert fs.state.feature_depth(0) == 1.0
    assert fs.cov[dep, dep] == 1.0


def test_initialize_feature_writes_block_and_clears_cross_covariance():
    fs = FilterState(n_max=3, n_cam=2)
    fs.cov = _random_spd(fs.D, seed=1)
    before = fs.cov.copy()

    fs.initialize_feature(1, np.array([0.2, -0.1, 2.0]), 0.4, INIT_COV)
    idx = fs.feature_indices(1)

    assert np.array_equal(fs.cov[np.ix_(idx, idx)], INIT_COV)
    others = np.setdiff1d(np.arange(fs.D), idx)
    assert np.all(fs.cov[np.ix_(idx, others)] == 0.0)
    assert np.all(fs.cov[np.ix_(others, idx)] == 0.0)
    assert np.array_equal(fs.cov[np.ix_(others, others)], before[np.ix_(others, others)])

    n = np.array([0.2, -0.1, 2.0])
    assert np.allclose(fs.state.feature_bearing(1), n / np.linalg.norm(n))
    assert fs.state.depth_param(1) == 0.4
    assert fs.is_active(1)


def test_remove_feature_resets_slot_to_identity():
    fs = FilterState(n_max=3, n_cam=1)
    fs.cov = _random_spd(fs.D, seed=2)

    fs.remove_feature(2)
    idx = fs.feature_indices(2)
    dep, nor = idx[0], idx[1]

    assert fs.cov[dep, dep] == 1.0
    assert np.array_equal(fs.cov[nor:nor + 2, nor:nor + 2], np.eye(2))
    others = np.setdiff1d(np.arange(fs.D), idx)
    assert np.all(fs.cov[np.ix_(idx, others)] == 0.0)
    assert np.all(fs.cov[np.ix_(others, idx)] == 0.0)
    assert fs.cov[dep, nor] == 0.0

    depth = fs.state.feature_depth(2)
    assert math.isfinite(depth) and depth > 0.0
    assert np.allclose(fs.state.feature_bearing(2), [0.0, 0.0, 1.0])
    assert not fs.is_active(2)


def test_remove_is_idempotent():
    fs = _make_filter()
    fs.initialize_feature(0, np.array([1.0, 0.0, 1.0]), 0.3, INIT_COV)
    fs.remove_feature(0)
    x_once, cov_once = fs.state.x.copy(), fs.cov.copy()
    fs.remove_feature(0)
    assert np.array_equal(fs.state.x, x_once)
    assert np.array_equal(fs.cov, cov_once)


def test_remove_then_initialize_equals_initialize_on_pristine_slot():
    pristine = _make_filter()
    reused = _make_filter()

    reused.initialize_feature(2, np.array([0.5, 0.5, 1.0]), 0.8, np.diag([0.3, 0.05, 0.05]))
    reused.remove_feature(2)

    bearing = np.array([-0.1, 0.3, 1.0])
    pristine.initialize_feature(2, bearing, 0.5, INIT_COV)
    reused.initialize_feature(2, bearing, 0.5, INIT_COV)

    assert np.array_equal(pristine.state.x, reused.state.x)
    assert np.array_equal(pristine.cov, reused.cov)
    assert pristine.active_slots == reused.active_slots


def test_initialize_feature_rejects_bad_input_without_mutation():
    fs = _make_filter()
    x_before, cov_before = fs.state.x.copy(), fs.cov.copy()

    with pytest.raises(ValueError):
        fs.initialize_feature(0, np.array([0.0, 0.0, 1.0]), 1.0, np.diag([1.0, -1.0, 1.0]))
    with pytest.raises(ValueError):
        fs.initialize_feature(0, np.array([0.0, 0.0, 1.0]), 1.0, np.eye(2))
    with pytest.raises(ValueError):
        fs.initialize_feature(0, np.zeros(3), 1.0, INIT_COV)
    with pytest.raises(IndexError):
        fs.initialize_feature(fs.n_max, np.array([0.0, 0.0, 1.0]), 1.0, INIT_COV)
    with pytest.raises(IndexError):
        fs.initialize_feature(0, np.array([0.0, 0.0, 1.0]), 1.0, INIT_COV, cam_id=3)

    assert np.array_equal(fs.state.x, x_before)
    assert np.array_equal(fs.cov, cov_before)
    assert fs.active_slots == set()


def test_initialize_feature_at_depth_converts_through_encoding():
    fs = FilterState(n_max=2, n_cam=2, depth_type=DepthType.INVERSE)
    fs.initialize_feature_at_depth(1, np.array([0.0, 0.1, 1.0]), 5.0, INIT_COV, cam_id=1)
    assert fs.state.depth_param(1) == pytest.approx(0.2)
    assert fs.state.feature_depth(1) == pytest.approx(5.0)
    assert fs.state.aux.cam_id[1] == 1
    v = fs.feature_depth_jacobian(1)
    assert v.d_p == pytest.approx(-25.0)


def test_occupancy_tracking_and_inference():
    fs = _make_filter(n_max=4)
    assert fs.free_slot() == 0
    assert fs.infer_active_slots() == set()

    fs.initialize_feature(0, np.array([0.0, 0.0, 1.0]), 0.5, INIT_COV)
    fs.initialize_feature(2, np.array([0.0, 1.0, 1.0]), 0.5, INIT_COV)
    assert fs.active_slots == {0, 2}
    assert fs.infer_active_slots() == {0, 2}
    assert fs.free_slot() == 1

    # Identity covariance makes an active slot look free to the implicit rule
    fs.initialize_feature(1, np.array([1.0, 0.0, 1.0]), 0.5, np.eye(3))
    assert 1 in fs.active_slots
    assert 1 not in fs.infer_active_slots()

    fs.initialize_feature(3, np.array([1.0, 1.0, 1.0]), 0.5, INIT_COV)
    assert fs.free_slot() is None
    fs.remove_feature(2)
    assert fs.free_slot() == 2


def test_check_covariance_reports_violations():
    fs = _make_filter(n_max=3)
    fs.initialize_feature(0, np.array([0.0, 0.0, 1.0]), 0.5, INIT_COV)
    assert fs.check_covariance() == []

    pos = fs.state.layout.error_index("pos")
    dep1 = fs.feature_indices(1)[0]
    fs.cov[pos, dep1] = fs.cov[dep1, pos] = 0.01
    problems = fs.check_covariance()
    assert any("slot 1" in p and "cross-covariance" in p for p in problems)

    fs.cov[0, 1] += 1.0
    assert any("not symmetric" in p for p in fs.check_covariance())

    asym = fs.symmetrize_covariance()
    assert asym > 0.0
    assert np.allclose(fs.cov, fs.cov.T)


def test_initialize_from_accelerometer():
    fs = FilterState(n_max=1, n_cam=1)
    fs.initialize_from_accelerometer(np.array([0.0, 0.0, 9.81]))
    assert np.allclose(fs.state.orientation(), [1.0, 0.0, 0.0, 0.0], atol=1e-9)

    fs.state.set("att", quat_normalize(np.array([0.5, 0.5, 0.5, 0.5])))
    fs.initialize_from_accelerometer(np.zeros(3))
    assert np.allclose(fs.state.orientation(), [1.0, 0.0, 0.0, 0.0])

    f = np.array([0.0, 9.81 * np.sin(0.3), 9.81 * np.cos(0.3)])
    fs.initialize_from_accelerometer(f)
    up = quat_rotate(fs.state.orientation(), f / np.linalg.norm(f))
    assert np.allclose(up, [0.0, 0.0, 1.0], atol=1e-9)

    fs.initialize_from_accelerometer(np.array([0.0, 0.0, -9.81]))
    up = quat_rotate(fs.state.orientation(), np.array([0.0, 0.0, -1.0]))
    assert np.allclose(up, [0.0, 0.0, 1.0], atol=1e-9)


def test_initialize_from_pose():
    fs = FilterState(n_max=1, n_cam=1)
    WrWM = np.array([1.0, -2.0, 0.5])
    qMW = quat_normalize(np.array([0.8, 0.1, 0.2, -0.3]))
    fs.initialize_from_pose(WrWM, qMW)

    assert np.allclose(fs.state.world_position(), WrWM)
    assert np.allclose(fs.state.orientation(), quat_inverse(qMW))
    with pytest.raises(ValueError):
        fs.initialize_from_pose(WrWM, np.zeros(4))


def test_extrinsics_covariance_follows_mode():
    fs = FilterState(n_max=2, n_cam=2)
    fs.cov = _random_spd(fs.D, seed=4)

    source, block = fs.extrinsics_covariance(1)
    assert source is ExtrinsicsSource.ESTIMATED
    vep = fs.state.layout.error_index("vep", 1)
    vea = fs.state.layout.error_index("vea", 1)
    assert block.shape == (6, 6)
    assert np.array_equal(block[:3, :3], fs.cov[vep:vep + 3, vep:vep + 3])
    assert np.array_equal(block[:3, 3:], fs.cov[vep:vep + 3, vea:vea + 3])

    fs.state.aux.do_ve_calibration = False
    source, block = fs.extrinsics_covariance(1)
    assert source is ExtrinsicsSource.FIXED
    assert block is None
    with pytest.raises(IndexError):
        fs.extrinsics_covariance(2)


def test_set_initial_covariance():
    fs = _make_filter(n_max=2, n_cam=2)
    fs.set_initial_covariance({"pos": 1e-2, "att": [1e-3, 1e-3, 4e-3], "vep": 1e-4})

    pos = fs.state.layout.error_slice("pos")
    att = fs.state.layout.error_slice("att")
    assert np.allclose(fs.cov[pos, pos], 1e-2 * np.eye(3))
    assert np.allclose(np.diag(fs.cov[att, att]), [1e-3, 1e-3, 4e-3])
    assert np.all(fs.cov[pos, att] == 0.0)
    for cam in range(2):
        sl = fs.state.layout.error_slice("vep", cam)
        assert np.allclose(fs.cov[sl, sl], 1e-4 * np.eye(3))
    with pytest.raises(ValueError):
        fs.set_initial_covariance({"dep": 1.0})
    with pytest.raises(ValueError):
        fs.set_initial_covariance({"vel": 0.0})


def test_set_initial_covariance_rejects_whole_table_before_writing():
    fs = _make_filter(n_max=2)
    fs.initialize_feature(0, np.array([0.0, 0.0, 1.0]), 0.5, INIT_COV)
    fs.cov[0, 3] = fs.cov[3, 0] = 1e-5
    before = fs.cov.copy()

    for table in ({"pos": 1e-2, "vel": -1.0},
                  {"pos": 1e-2, "nor": 1.0},
                  {"pos": 1e-2, "bogus": 1.0}):
        with pytest.raises(ValueError):
            fs.set_initial_covariance(table)
        assert np.array_equal(fs.cov, before)


def test_checkpoint_round_trip(tmp_path):
    fs = _make_filter(n_max=3, n_cam=2)
    fs.state.aux.do_ve_calibration = False
    fs.state.aux.MrMC[1] = [0.1, 0.2, 0.3]
    fs.initialize_feature(1, np.array([0.1, 0.0, 1.0]), 0.7, INIT_COV, cam_id=1)
    fs.img_time = 12.5
    fs.image_counter = 42
    fs.t = 3.25
    fs.last_prediction_meas = PredictionMeas(acc=[0.1, 0.0, 9.8], gyr=[0.0, 0.02, 0.0])
    aux = fs.state.aux
    aux.active_feature = 5
    aux.active_camera_counter = 3
    aux.w_est = np.array([0.01, -0.02, 0.03])
    aux.w_meas = np.array([0.02, -0.01, 0.04])
    aux.w_meas_cov = 2.0 * np.eye(3)

    path = tmp_path / "filter_state.npz"
    fs.save_checkpoint(str(path))
    restored = FilterState.load_checkpoint(str(path))

    assert np.array_equal(restored.state.x, fs.state.x)
    assert np.array_equal(restored.cov, fs.cov)
    assert restored.active_slots == {1}
    assert restored.state.aux.do_ve_calibration is False
    assert np.allclose(restored.state.camera_offset(1), [0.1, 0.2, 0.3])
    assert restored.state.aux.cam_id[1] == 1
    assert restored.state.aux.depth_map.type == DepthType.INVERSE
    assert restored.img_time == 12.5
    assert restored.image_counter == 42
    assert restored.t == 3.25
    assert np.allclose(restored.last_prediction_meas.as_vector(), [0.1, 0.0, 9.8, 0.0, 0.02, 0.0])
    restored_aux = restored.state.aux
    assert restored_aux.active_feature == 5
    assert restored_aux.active_camera_counter == 3
    assert np.allclose(restored_aux.w_est, [0.01, -0.02, 0.03])
    assert np.allclose(restored_aux.w_meas, [0.02, -0.01, 0.04])
    assert np.allclose(restored_aux.w_meas_cov, 2.0 * np.eye(3))


def test_from_checkpoint_rejects_mismatched_dimensions():
    data = _make_filter(n_max=2).to_checkpoint()
    data["cov"] = np.eye(3)
    with pytest.raises(ValueError):
        FilterState.from_checkpoint(data)


def test_defaults_and_repr():
    fs = FilterState(n_max=2, n_cam=3)
    assert fs.use_prediction_merge is True
    assert fs.img_time == 0.0
    assert fs.image_counter == 0
    assert len(fs.img) == 3
    assert fs.noise.D == fs.D
    assert np.array_equal(fs.cov, np.eye(fs.D))
    assert fs.check_covariance() == []
    assert "FilterState object" in repr(fs)
