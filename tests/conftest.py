import numpy as np
import pytest
from astropy.table import Table

from colocalization.colocalization_data import CalibrationPoint

IMAGE_SIZE = 512.0
N_PLANES = 20.0


def smooth_offset(x, y):
    """Slowly varying channel-1 minus channel-0 offset in pixels (z in sections)."""
    u = x / IMAGE_SIZE
    v = y / IMAGE_SIZE
    return np.array(
        [
            0.6 + 0.3 * u - 0.2 * v + 0.4 * u * u,
            -0.4 + 0.1 * u + 0.5 * v * v - 0.2 * u * v,
            0.3 + 0.2 * np.sin(np.pi * u) * np.cos(np.pi * v),
        ]
    )


def quadratic_offset(x, y):
    """Offset that is exactly quadratic in (x, y)."""
    return np.array(
        [
            0.5 + 1e-3 * x - 2e-3 * y + 1e-6 * x * x,
            -0.2 + 2e-6 * y * y - 1e-6 * x * y,
            0.1 + 5e-4 * x,
        ]
    )


def make_points(n, offset=smooth_offset, noise=0.0, seed=0, extra_channel_slope=None):
    """
    Random calibration beads over the field of view. With `extra_channel_slope`
    a channel 2 is added whose offset, scaled by the slope, is also present in
    channel 1.
    """
    rng = np.random.default_rng(seed)
    points = []
    for i in range(n):
        ref = np.array(
            [
                rng.uniform(20, IMAGE_SIZE - 20),
                rng.uniform(20, IMAGE_SIZE - 20),
                rng.uniform(4, N_PLANES - 4),
            ]
        )
        corr = ref + offset(ref[0], ref[1]) + rng.normal(0.0, noise, 3)
        positions = {0: ref, 1: corr}
        if extra_channel_slope is not None:
            aberr = rng.normal(0.0, 0.5, 3)
            positions[2] = ref + aberr
            positions[1] = corr + extra_channel_slope * aberr
        points.append(
            CalibrationPoint(
                label=i + 1,
                positions=positions,
                image_id=f"image_{i // 25:02d}",
                amplitudes={ch: 1000.0 + i for ch in positions},
            )
        )
    return points


def points_catalog(points):
    """Catalog table as produced by the spot fitting step."""
    channels = points[0].channels
    table = Table()
    table["label"] = [p.label for p in points]
    table["image_id"] = [p.image_id for p in points]
    for ch in channels:
        coords = np.array([p.position(ch) for p in points])
        table[f"x_c{ch}"] = coords[:, 0]
        table[f"y_c{ch}"] = coords[:, 1]
        table[f"z_c{ch}"] = coords[:, 2]
        table[f"amplitude_c{ch}"] = [p.amplitudes[ch] for p in points]
        table[f"r2_c{ch}"] = np.full(len(points), 0.95)
        table[f"fit_error_c{ch}"] = np.full(len(points), 0.01)
    table["max_level"] = np.full(len(points), 2000.0)
    table["fit_finished"] = np.ones(len(points), dtype=bool)
    return table


def sample_p3d(m, s, n, seed=0):
    """Draws separations of two points a distance m apart, each axis blurred by s."""
    rng = np.random.default_rng(seed)
    vec = np.array([m, 0.0, 0.0]) + rng.normal(0.0, s, size=(n, 3))
    return np.linalg.norm(vec, axis=1)


@pytest.fixture
def calibration_points():
    return make_points(80, noise=0.01, seed=1)


@pytest.fixture
def scale():
    return np.array([80.0, 80.0, 100.0])
