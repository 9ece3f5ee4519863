import numpy as np

from morphfit.orientation import are_vertices_ccw_in_screen_space, ccw_in_screen_space


def test_front_facing_in_y_down_screen_space():
    # counter-clockwise as seen on a y-down screen
    assert are_vertices_ccw_in_screen_space((0, 0), (0, 10), (10, 0))
    assert not are_vertices_ccw_in_screen_space((0, 0), (10, 0), (0, 10))


def test_reversing_the_winding_flips_the_result():
    rng = np.random.default_rng(0)
    for v0, v1, v2 in rng.uniform(-100, 100, (20, 3, 2)):
        assert are_vertices_ccw_in_screen_space(v0, v1, v2) != are_vertices_ccw_in_screen_space(v2, v1, v0)


def test_degenerate_triangle_is_not_front_facing():
    assert not are_vertices_ccw_in_screen_space((0, 0), (5, 5), (10, 10))
    assert not are_vertices_ccw_in_screen_space((3, 3), (3, 3), (3, 3))


def test_vectorised_version_agrees():
    rng = np.random.default_rng(1)
    points = rng.uniform(0, 50, (30, 3))
    triangles = rng.integers(0, 30, (40, 3))
    expected = [are_vertices_ccw_in_screen_space(*points[t, :2]) for t in triangles]
    np.testing.assert_array_equal(ccw_in_screen_space(points, triangles), expected)
