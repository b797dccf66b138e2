import numpy as np
import pytest

from colocalization.colocalization_data import CalibrationPoint
from colocalization.correction_core import (
    Correction,
    CorrectionBuilder,
    LocalQuadraticModel,
    UnableToCorrectError,
    UnderdeterminedFitError,
    apply_correction,
    corrected_position,
    nearest_neighbors,
    smoothstep_weight,
)

from conftest import make_points, quadratic_offset


# -----------------------------------------------------------------------------
# Weights and neighbour selection
# -----------------------------------------------------------------------------


def test_smoothstep_weight_endpoints_and_support():
    assert smoothstep_weight(0.0) == pytest.approx(1.0)
    assert smoothstep_weight(0.5) == pytest.approx(0.5)
    assert smoothstep_weight(1.0) == pytest.approx(0.0)
    assert smoothstep_weight(1.5) == 0.0
    assert smoothstep_weight(10.0) == 0.0


def test_smoothstep_weight_is_monotone_on_unit_interval():
    t = np.linspace(0.0, 1.0, 101)
    w = smoothstep_weight(t)
    assert np.all(np.diff(w) <= 0)
    assert np.all((w >= 0) & (w <= 1))


def test_nearest_neighbors_picks_k_smallest():
    distances = np.array([5.0, 4.0, 3.0, 2.0, 1.0, 0.0])
    indices, cutoff = nearest_neighbors(distances, 2)
    np.testing.assert_array_equal(indices, [4, 5])
    assert cutoff == pytest.approx(1.5)


def test_nearest_neighbors_ties_keep_lower_index():
    indices, cutoff = nearest_neighbors(np.array([1.0, 1.0, 1.0, 0.0]), 2)
    np.testing.assert_array_equal(indices, [0, 3])
    assert cutoff == pytest.approx(1.0)

    indices, _ = nearest_neighbors(np.array([0.0, 1.0, 1.0, 1.0, 2.0]), 2)
    np.testing.assert_array_equal(indices, [0, 1])


def test_nearest_neighbors_needs_one_spare_point():
    with pytest.raises(ValueError):
        nearest_neighbors(np.arange(6.0), 6)


# -----------------------------------------------------------------------------
# Local model
# -----------------------------------------------------------------------------


def test_design_matrix_columns():
    A = LocalQuadraticModel().build_design_matrix(np.array([2.0]), np.array([3.0]))
    np.testing.assert_allclose(A, [[1.0, 2.0, 3.0, 4.0, 9.0, 6.0]])


def test_solve_recovers_exact_quadratic():
    model = LocalQuadraticModel()
    rng = np.random.default_rng(3)
    dx, dy = rng.uniform(-10, 10, (2, 15))
    coeffs = np.array([0.5, -0.1, 0.2, 0.01, -0.02, 0.005])
    solved = model.solve(model.build_design_matrix(dx, dy), model.evaluate(coeffs, dx, dy))
    np.testing.assert_allclose(solved, coeffs, atol=1e-10)


def test_solve_rejects_too_few_rows():
    model = LocalQuadraticModel()
    A = model.build_design_matrix(np.arange(5.0), np.arange(5.0) ** 2)
    with pytest.raises(UnderdeterminedFitError):
        model.solve(A, np.zeros(5))


def test_solve_rejects_non_finite_input():
    model = LocalQuadraticModel()
    dx = np.array([0.0, 1.0, -1.0, 2.0, -2.0, 0.5, np.nan])
    dy = np.array([0.0, 1.0, 2.0, -1.0, 0.5, -2.0, 1.0])
    with pytest.raises(UnderdeterminedFitError):
        model.solve(model.build_design_matrix(dx, dy), np.zeros(7))


# -----------------------------------------------------------------------------
# Building and querying
# -----------------------------------------------------------------------------


def test_builder_validates_arguments():
    with pytest.raises(ValueError):
        CorrectionBuilder(0, 0, 10)
    with pytest.raises(ValueError):
        CorrectionBuilder(-1, 1, 10)
    with pytest.raises(ValueError):
        CorrectionBuilder(0, 1, 5)


def test_build_creates_one_surface_per_point(calibration_points):
    correction = CorrectionBuilder(0, 1, 12).build(calibration_points)
    assert len(correction) == len(calibration_points)
    assert correction.correction_x.shape == (len(calibration_points), 6)
    assert np.all(correction.distance_cutoffs > 0)
    assert correction.reference_channel == 0
    assert correction.correction_channel == 1
    assert not correction.correction_x.flags.writeable
    with pytest.raises(ValueError):
        correction.correction_x[0, 0] = 1.0


def test_build_requires_more_points_than_neighbors():
    points = make_points(10)
    with pytest.raises(ValueError):
        CorrectionBuilder(0, 1, 10).build(points)


def test_quadratic_field_is_reproduced_exactly():
    points = make_points(60, offset=quadratic_offset, seed=4)
    correction = CorrectionBuilder(0, 1, 12).build(points)

    for p in points[:20]:
        pos = p.position(0)
        offset = correction.correct_position(pos[0], pos[1])
        np.testing.assert_allclose(offset, quadratic_offset(pos[0], pos[1]), atol=1e-6)


def test_constant_offset_gives_constant_coefficient():
    points = make_points(40, offset=lambda x, y: np.array([1.5, -0.5, 0.25]), seed=5)
    correction = CorrectionBuilder(0, 1, 8).build(points)

    np.testing.assert_allclose(correction.correction_x[:, 0], 1.5, atol=1e-8)
    np.testing.assert_allclose(correction.correction_y[:, 0], -0.5, atol=1e-8)
    np.testing.assert_allclose(correction.correction_z[:, 0], 0.25, atol=1e-8)
    np.testing.assert_allclose(correction.correction_x[:, 1:], 0.0, atol=1e-8)

    pos = points[0].position(0)
    np.testing.assert_allclose(
        correction.correct_position(pos[0], pos[1]), [1.5, -0.5, 0.25], atol=1e-8
    )


def test_query_outside_coverage_raises(calibration_points):
    correction = CorrectionBuilder(0, 1, 12).build(calibration_points)
    with pytest.raises(UnableToCorrectError):
        correction.correct_position(1e5, 1e5)


def test_correct_positions_marks_uncovered_rows(calibration_points):
    correction = CorrectionBuilder(0, 1, 12).build(calibration_points)
    inside = calibration_points[0].position(0)[:2]
    offsets, ok = correction.correct_positions(np.array([inside, [1e5, 1e5]]))
    np.testing.assert_array_equal(ok, [True, False])
    assert np.all(np.isfinite(offsets[0]))
    assert np.all(np.isnan(offsets[1]))


def test_collinear_neighbours_are_underdetermined():
    points = [
        CalibrationPoint(i + 1, {0: (10.0 * i, 50.0, 5.0), 1: (10.0 * i + 0.5, 50.2, 5.1)})
        for i in range(12)
    ]
    with pytest.raises(UnderdeterminedFitError):
        CorrectionBuilder(0, 1, 8).build(points)


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("suffix", [".fits", ".ecsv"])
def test_correction_file_round_trip(tmp_path, calibration_points, suffix):
    correction = CorrectionBuilder(0, 1, 12).build(calibration_points)
    correction.tre = 12.5
    correction.tre_xy = 8.25
    filename = tmp_path / f"correction{suffix}"
    correction.write(str(filename))

    loaded = Correction.read(str(filename))
    assert len(loaded) == len(correction)
    assert loaded.reference_channel == 0
    assert loaded.correction_channel == 1
    assert loaded.tre == pytest.approx(12.5)
    assert loaded.tre_xy == pytest.approx(8.25)
    np.testing.assert_allclose(loaded.correction_x, correction.correction_x)
    np.testing.assert_allclose(loaded.correction_z, correction.correction_z)
    np.testing.assert_allclose(loaded.distance_cutoffs, correction.distance_cutoffs)
    np.testing.assert_allclose(loaded.positions, correction.positions)


def test_correction_without_tre_round_trips(tmp_path, calibration_points):
    correction = CorrectionBuilder(0, 1, 12).build(calibration_points)
    filename = str(tmp_path / "correction.fits")
    correction.write(filename)
    loaded = Correction.read(filename)
    assert loaded.tre is None
    assert loaded.tre_xy is None


def test_from_table_requires_channel_metadata(calibration_points):
    table = CorrectionBuilder(0, 1, 12).build(calibration_points).to_table()
    del table.meta["REFCHAN"]
    with pytest.raises(ValueError):
        Correction.from_table(table)


# -----------------------------------------------------------------------------
# Applying a correction
# -----------------------------------------------------------------------------


def test_apply_correction_removes_systematic_offset(scale):
    points = make_points(60, offset=quadratic_offset, seed=6)
    correction = CorrectionBuilder(0, 1, 12).build(points)

    stray = CalibrationPoint(999, {0: (5000.0, 5000.0, 5.0), 1: (5001.0, 5000.0, 5.0)})
    applied = apply_correction(correction, points + [stray], scale)

    assert applied.n_failed == 1
    assert not applied.success[-1]
    assert np.isnan(applied.distances[-1])
    assert np.all(applied.distances[:-1] < 1e-3)
    assert np.all(applied.uncorrected_distances[:-1] > 10.0)


def test_flip_negates_offset():
    points = make_points(40, offset=quadratic_offset, seed=7)
    correction = CorrectionBuilder(0, 1, 10).build(points)
    p = points[3]
    offset = correction.correct_position(*p.position(0)[:2])

    np.testing.assert_allclose(corrected_position(p, correction), p.position(1) - offset)
    np.testing.assert_allclose(
        corrected_position(p, correction, flip=True), p.position(1) + offset
    )
    np.testing.assert_allclose(
        corrected_position(p, correction, inverted_z=True),
        p.position(1) - offset * np.array([1.0, 1.0, -1.0]),
    )


def test_isolated_surface_returns_its_constant_coefficient():
    coeffs_x = np.array([[0.7, 0.1, -0.2, 0.01, 0.02, 0.03], [-1.3, 0.5, 0.5, 0.0, 0.0, 0.0]])
    coeffs_y = np.array([[0.2, 0.0, 0.0, 0.0, 0.0, 0.0], [0.9, 0.0, 0.0, 0.0, 0.0, 0.0]])
    coeffs_z = np.array([[-0.4, 0.0, 0.0, 0.0, 0.0, 0.0], [0.1, 0.0, 0.0, 0.0, 0.0, 0.0]])
    correction = Correction(
        coeffs_x,
        coeffs_y,
        coeffs_z,
        distance_cutoffs=np.array([10.0, 10.0]),
        positions=np.array([[100.0, 100.0, 5.0], [400.0, 400.0, 5.0]]),
        reference_channel=0,
        correction_channel=1,
    )

    for i in range(2):
        center = correction.positions[i]
        offset = correction.correct_position(center[0], center[1])
        assert offset[0] == pytest.approx(correction.correction_x[i, 0])
        assert offset[1] == pytest.approx(correction.correction_y[i, 0])
        assert offset[2] == pytest.approx(correction.correction_z[i, 0])


def test_isolated_cluster_in_built_correction():
    near = make_points(30, offset=lambda x, y: np.array([0.5, 0.5, 0.0]), seed=8)
    far = [
        CalibrationPoint(
            100 + i,
            {0: (5000.0 + dx, 5000.0 + dy, 5.0), 1: (5000.0 + dx - 1.0, 5000.0 + dy + 2.0, 5.5)},
        )
        for i, (dx, dy) in enumerate(
            [(0, 0), (3, 1), (-2, 4), (1, -3), (-4, -1), (2, 5), (5, -2), (-3, 3), (4, 4)]
        )
    ]
    correction = CorrectionBuilder(0, 1, 8).build(near + far)

    i = len(near)
    center = correction.positions[i]
    offset = correction.correct_position(center[0], center[1])
    assert offset[0] == pytest.approx(correction.correction_x[i, 0])
    assert offset[0] == pytest.approx(-1.0, abs=1e-8)
    assert offset[1] == pytest.approx(2.0, abs=1e-8)
