import pytest

from vio_state.layout import StateLayout
from vio_state.state import build_noise_layout, build_state_layout


def test_state_layout_offsets_two_slots_one_camera():
    layout = build_state_layout(n_max=2, n_cam=1)

    assert layout.names == ["pos", "vel", "acb", "gyb", "att", "vep", "vea", "dep", "nor"]
    assert layout.error_dim == 15 + 6 * 1 + 3 * 2
    assert layout.nominal_dim == 3 * 4 + 4 + 3 + 4 + 2 * 1 + 2 * 4

    assert layout.error_index("pos") == 0
    assert layout.error_index("att") == 12
    assert layout.error_index("vep") == 15
    assert layout.error_index("vea") == 18
    assert layout.error_index("dep", 0) == 21
    assert layout.error_index("dep", 1) == 22
    assert layout.error_index("nor", 0) == 23
    assert layout.error_index("nor", 1) == 25

    assert layout.nominal_slice("att") == slice(12, 16)
    assert layout.nominal_slice("nor", 1) == slice(29, 33)


def test_noise_layout_matches_state_error_dimension():
    for n_max, n_cam in [(1, 1), (5, 2), (25, 3)]:
        state_layout = build_state_layout(n_max, n_cam)
        noise_layout = build_noise_layout(n_max, n_cam)
        assert noise_layout.error_dim == state_layout.error_dim
        for name in noise_layout.names:
            assert noise_layout.block_error_slice(name) == state_layout.block_error_slice(name)


def test_error_owner_maps_back_to_blocks():
    layout = build_state_layout(n_max=3, n_cam=2)
    assert layout.error_owner(0) == ("pos", 0, 0)
    assert layout.error_owner(layout.error_index("vea", 1) + 2) == ("vea", 1, 2)
    assert layout.error_owner(layout.error_index("nor", 2) + 1) == ("nor", 2, 1)
    with pytest.raises(IndexError):
        layout.error_owner(layout.error_dim)


def test_builder_rejects_duplicates_and_bad_indices():
    with pytest.raises(ValueError):
        StateLayout.builder().add("pos", 3).add("pos", 3).build()

    layout = StateLayout.builder().add("a", 2).add("b", 1, count=4).build()
    with pytest.raises(IndexError):
        layout.error_index("b", 4)
    with pytest.raises(IndexError):
        layout.nominal_slice("b", -1)
    with pytest.raises(KeyError):
        layout.block("c")
    assert "b" in layout
    assert len(layout) == 2
