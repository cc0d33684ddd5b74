import pytest
import numpy as np
from numpy.testing import assert_array_equal, assert_allclose
import jax
from landlab import RasterModelGrid

from utils import (
    DistributedGrid, InvalidConfigurationError, create_patch_decomposition,
    compute_vertical_levels, compute_fine_vertical_grid, freeze_grid
)
from .fixtures import raster, vertical, vertical_no_bedrock, grid, grid_no_bedrock

def test_patch_decomposition_covers_domain():
    patches = create_patch_decomposition(10, 7, 3, 2)

    assert len(patches) == 6
    assert [p.xm for p in patches[::2]] == [4, 3, 3]
    assert [p.ym for p in patches[:2]] == [4, 3]
    assert [p.rank for p in patches] == list(range(6))

    owners = np.zeros((10, 7), dtype = int)
    for patch in patches:
        for i, j in patch.owned_columns():
            owners[i, j] += 1

    assert_array_equal(owners, 1)

def test_patch_decomposition_rejects_bad_counts():
    with pytest.raises(InvalidConfigurationError):
        create_patch_decomposition(4, 4, 0, 1)

    with pytest.raises(InvalidConfigurationError):
        create_patch_decomposition(4, 4, 5, 1)

def test_local_index():
    patch = create_patch_decomposition(4, 4, 2, 2)[3]

    assert (patch.xs, patch.ys) == (2, 2)
    assert patch.contains(3, 2)
    assert not patch.contains(1, 2)
    assert patch.local_index(2, 2) == (1, 1)
    assert patch.local_index(1, 3) == (0, 2)

def test_equal_vertical_levels(vertical):
    assert vertical.Mz == 11
    assert vertical.Mbz == 5
    assert_allclose(vertical.zlevels, np.arange(11) * 100.0)
    assert_allclose(vertical.zblevels, [-400, -300, -200, -100, 0])
    assert vertical.dzMIN == pytest.approx(100.0)
    assert vertical.dzbMAX == pytest.approx(100.0)

def test_quadratic_vertical_levels():
    levels = compute_vertical_levels("quadratic", Mz = 5, Mbz = 1, Lz = 1000.0, Lbz = 0.0)

    assert_allclose(levels.zlevels, [0.0, 109.375, 312.5, 609.375, 1000.0])
    assert levels.dzMIN == pytest.approx(109.375)
    assert levels.dzMAX == pytest.approx(390.625)
    assert np.all(np.diff(levels.zlevels) > 0)

@pytest.mark.parametrize(
    "spacing, Mz, Mbz, Lz, Lbz",
    [
        ("cubic", 5, 1, 1000.0, 0.0),
        ("equal", 1, 1, 1000.0, 0.0),
        ("equal", 5, 1, 1000.0, 100.0),
        ("equal", 5, 3, 1000.0, 0.0),
        ("equal", 5, 1, -10.0, 0.0)
    ]
)
def test_invalid_vertical_levels(spacing, Mz, Mbz, Lz, Lbz):
    with pytest.raises(InvalidConfigurationError):
        compute_vertical_levels(spacing, Mz, Mbz, Lz, Lbz)

def test_fine_grid_matches_equal_storage(vertical):
    fine = compute_fine_vertical_grid(vertical)

    assert fine.Mz_fine == 11
    assert fine.Mbz_fine == 5
    assert fine.dz_fine == pytest.approx(100.0)
    assert_allclose(fine.zblevels_fine, [-400, -300, -200, -100, 0])
    assert_array_equal(fine.ice_storage2fine, np.arange(11))
    assert_array_equal(fine.bed_fine2storage, np.arange(5))

def test_fine_grid_maps_on_quadratic_levels():
    levels = compute_vertical_levels("quadratic", Mz = 5, Mbz = 1, Lz = 1000.0, Lbz = 0.0)
    fine = compute_fine_vertical_grid(levels)

    assert fine.dz_fine <= levels.dzMIN
    assert fine.Mbz_fine == 1
    assert fine.zlevels_fine[-1] == pytest.approx(1000.0)

    zfine = np.asarray(fine.zlevels_fine)
    z = np.asarray(levels.zlevels)

    for k, kf in enumerate(np.asarray(fine.ice_storage2fine)):
        assert zfine[kf] <= z[k] + 1e-9
        if kf + 1 < len(zfine):
            assert zfine[kf + 1] > z[k] - 1e-9

    for kf, k in enumerate(np.asarray(fine.ice_fine2storage)):
        assert z[k] <= zfine[kf] + 1e-9

    # storage2fine holds fine indices, fine2storage holds storage indices
    assert_array_equal(fine.ice_storage2fine, [0, 1, 3, 6, 10])
    assert_array_equal(fine.ice_fine2storage, [0, 0, 1, 1, 2, 2, 2, 3, 3, 3, 4])

def test_fine_bedrock_deeper_than_storage():
    levels = compute_vertical_levels("equal", Mz = 11, Mbz = 2, Lz = 1000.0, Lbz = 250.0)
    grid = freeze_grid(RasterModelGrid((3, 3)), levels)

    assert grid.fine.Mbz_fine == 4
    assert_allclose(grid.fine.zblevels_fine, [-300.0, -200.0, -100.0, 0.0])

    # A geothermal profile continues along its gradient below -Lbz
    bed = 265.0 - 0.02 * np.asarray(grid.zblevels)
    bed_fine = grid.bed_column_to_fine(bed)

    assert_allclose(bed_fine, 265.0 - 0.02 * np.asarray(grid.fine.zblevels_fine))
    assert_allclose(grid.bed_column_from_fine(bed_fine), bed)

def test_freeze_grid(raster, vertical):
    grid = freeze_grid(raster, vertical, n_procs_x = 2, n_procs_y = 1)

    assert isinstance(grid, DistributedGrid)
    assert (grid.Mx, grid.My) == (4, 4)
    assert grid.dx == 1000.0
    assert len(grid.patches) == 2
    assert grid.patch(1).xs == 2
    assert isinstance(grid.fine.zlevels_fine, jax.Array)

def test_from_non_square_grid(vertical):
    rmg = RasterModelGrid((3, 5), xy_spacing = (200.0, 100.0))
    grid = DistributedGrid.from_grid(rmg, vertical)

    assert (grid.Mx, grid.My) == (5, 3)
    assert (grid.dx, grid.dy) == (200.0, 100.0)

    values = rmg.node_x + 10 * rmg.node_y
    mapped = grid.map_node_values_to_xy(values)

    assert mapped.shape == (5, 3)
    assert mapped[4, 2] == pytest.approx(800.0 + 2000.0)

def test_k_below_height(grid):
    assert grid.k_below_height(0.0) == 0
    assert grid.k_below_height(250.0) == 2
    assert grid.k_below_height(300.0) == 3
    assert grid.k_below_height(1000.0) == 10

    with pytest.raises(ValueError):
        grid.k_below_height(-5.0)

    with pytest.raises(ValueError):
        grid.k_below_height(1200.0)

def test_column_interpolation():
    levels = compute_vertical_levels("quadratic", Mz = 5, Mbz = 3, Lz = 1000.0, Lbz = 200.0)
    grid = freeze_grid(RasterModelGrid((3, 3)), levels)

    linear = 2.0 * np.asarray(grid.zlevels) + 1.0
    fine = grid.ice_column_to_fine(linear)

    assert_allclose(fine, 2.0 * np.asarray(grid.fine.zlevels_fine) + 1.0)
    assert_allclose(grid.ice_column_from_fine(fine), linear)

    bed = 270.0 - 0.02 * np.asarray(grid.zblevels)
    bed_fine = grid.bed_column_to_fine(bed)

    assert_allclose(bed_fine, 270.0 - 0.02 * np.asarray(grid.fine.zblevels_fine))
    assert_allclose(grid.bed_column_from_fine(bed_fine), bed)

def test_single_bedrock_level(grid_no_bedrock):
    assert grid_no_bedrock.fine.Mbz_fine == 1
    assert_allclose(grid_no_bedrock.bed_column_to_fine([263.0]), [263.0])
