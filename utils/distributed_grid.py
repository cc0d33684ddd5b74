"""Horizontal domain decomposition and vertical discretization of the model grid.

The horizontal grid is rectangular, equally spaced, and periodic in both
directions. It is split into rectangular patches, one per worker; every
column lives on exactly one patch. Vertically, fields are stored on ice
levels in [0, Lz] and bedrock levels in [-Lbz, 0], which may be unequally
spaced. The column solver works on a finer, equally spaced grid that is
linked to the storage levels by precomputed index maps.
"""

import math
import numpy as np
import jax
import jax.numpy as jnp
import equinox as eqx

from jax import config
config.update("jax_enable_x64", True)

from utils.errors import InvalidConfigurationError


class HorizontalPatch(eqx.Module):
    """The index range [xs, xs + xm) x [ys, ys + ym) owned by one worker."""

    rank: int = eqx.field(converter = int, static = True)
    xs: int = eqx.field(converter = int, static = True)
    xm: int = eqx.field(converter = int, static = True)
    ys: int = eqx.field(converter = int, static = True)
    ym: int = eqx.field(converter = int, static = True)

    def owned_columns(self):
        """Iterate over the (i, j) indices of every owned column."""
        for i in range(self.xs, self.xs + self.xm):
            for j in range(self.ys, self.ys + self.ym):
                yield i, j

    def contains(self, i: int, j: int) -> bool:
        return (self.xs <= i < self.xs + self.xm) and (self.ys <= j < self.ys + self.ym)

    def local_index(self, i: int, j: int) -> tuple:
        """Map global indices to indices into a patch array with a ghost ring of width one."""
        return (i - self.xs + 1, j - self.ys + 1)


class VerticalLevels(eqx.Module):
    """Storage levels in the ice and in the bedrock."""

    zlevels: jax.Array = eqx.field(converter = jnp.asarray)
    zblevels: jax.Array = eqx.field(converter = jnp.asarray)
    Lz: float = eqx.field(converter = float, static = True)
    Lbz: float = eqx.field(converter = float, static = True)
    spacing: str = eqx.field(static = True)
    dzMIN: float = eqx.field(converter = float, static = True)
    dzMAX: float = eqx.field(converter = float, static = True)
    dzbMIN: float = eqx.field(converter = float, static = True)
    dzbMAX: float = eqx.field(converter = float, static = True)

    @property
    def Mz(self) -> int:
        return self.zlevels.shape[0]

    @property
    def Mbz(self) -> int:
        return self.zblevels.shape[0]


class FineVerticalGrid(eqx.Module):
    """Equally spaced levels used by the column solver, with maps to and from storage levels.

    ice_storage2fine[k] is the fine level just below storage level k, and
    ice_fine2storage[k] is the storage level just below fine level k;
    likewise for the bedrock maps. Maps are named index2value: ice_storage2fine
    is indexed by storage level and holds fine-grid indices. Code that names
    these maps by what they hold has them the other way around.
    """

    zlevels_fine: jax.Array = eqx.field(converter = jnp.asarray)
    zblevels_fine: jax.Array = eqx.field(converter = jnp.asarray)
    dz_fine: float = eqx.field(converter = float, static = True)

    ice_storage2fine: jax.Array = eqx.field(converter = jnp.asarray)
    ice_fine2storage: jax.Array = eqx.field(converter = jnp.asarray)
    bed_storage2fine: jax.Array = eqx.field(converter = jnp.asarray)
    bed_fine2storage: jax.Array = eqx.field(converter = jnp.asarray)

    @property
    def Mz_fine(self) -> int:
        return self.zlevels_fine.shape[0]

    @property
    def Mbz_fine(self) -> int:
        return self.zblevels_fine.shape[0]


def create_patch_decomposition(Mx: int, My: int, n_procs_x: int, n_procs_y: int) -> list:
    """Tile the Mx x My domain with a balanced grid of n_procs_x x n_procs_y patches."""
    if n_procs_x < 1 or n_procs_y < 1:
        raise InvalidConfigurationError(
            f"Processor counts must be positive, got {n_procs_x} x {n_procs_y}."
        )

    if n_procs_x > Mx or n_procs_y > My:
        raise InvalidConfigurationError(
            f"Cannot split a {Mx} x {My} grid across {n_procs_x} x {n_procs_y} processors."
        )

    procs_x = [Mx // n_procs_x + int((Mx % n_procs_x) > r) for r in range(n_procs_x)]
    procs_y = [My // n_procs_y + int((My % n_procs_y) > r) for r in range(n_procs_y)]

    starts_x = np.concatenate([[0], np.cumsum(procs_x)[:-1]])
    starts_y = np.concatenate([[0], np.cumsum(procs_y)[:-1]])

    patches = []
    for rx in range(n_procs_x):
        for ry in range(n_procs_y):
            patches.append(
                HorizontalPatch(
                    rank = rx * n_procs_y + ry,
                    xs = starts_x[rx],
                    xm = procs_x[rx],
                    ys = starts_y[ry],
                    ym = procs_y[ry]
                )
            )

    return patches


def _is_increasing(values: np.ndarray) -> bool:
    return bool(np.all(np.diff(values) > 0))


def compute_vertical_levels(
    spacing: str,
    Mz: int,
    Mbz: int,
    Lz: float,
    Lbz: float,
    lam: float = 4.0
) -> VerticalLevels:
    """Compute storage levels in the ice and bedrock.

    Ice levels are either equally spaced or quadratic, z = Lz (zeta / lam) (1 + (lam - 1) zeta),
    which concentrates levels near the base. Bedrock levels are equally spaced
    on [-Lbz, 0]; Mbz == 1 means there is no bedrock thermal layer.
    """
    if Mz < 2:
        raise InvalidConfigurationError(f"Need at least two ice levels, got Mz = {Mz}.")

    if Lz <= 0:
        raise InvalidConfigurationError(f"Ice extent Lz must be positive, got {Lz}.")

    if Mbz < 1:
        raise InvalidConfigurationError(f"Need at least one bedrock level, got Mbz = {Mbz}.")

    if Mbz == 1 and Lbz != 0:
        raise InvalidConfigurationError("A single bedrock level requires Lbz = 0.")

    if Mbz > 1 and Lbz <= 0:
        raise InvalidConfigurationError(f"Bedrock extent Lbz must be positive, got {Lbz}.")

    zeta = np.linspace(0.0, 1.0, Mz)

    if spacing == "equal":
        zlevels = (Lz / (Mz - 1)) * np.arange(Mz)
    elif spacing == "quadratic":
        if lam <= 0:
            raise InvalidConfigurationError(f"Quadratic spacing parameter must be positive, got {lam}.")
        zlevels = Lz * (zeta / lam) * (1.0 + (lam - 1.0) * zeta)
    else:
        raise InvalidConfigurationError(f"Unknown vertical spacing '{spacing}'.")

    zlevels[-1] = Lz

    if Mbz > 1:
        zblevels = -(Lbz / (Mbz - 1)) * np.arange(Mbz - 1, -1, -1)
    else:
        zblevels = np.zeros(1)

    if not _is_increasing(zlevels) or not _is_increasing(zblevels):
        raise InvalidConfigurationError("Vertical levels must be strictly increasing.")

    dz = np.diff(zlevels)
    dzb = np.diff(zblevels) if Mbz > 1 else np.zeros(1)

    return VerticalLevels(
        zlevels = zlevels,
        zblevels = zblevels,
        Lz = Lz,
        Lbz = Lbz,
        spacing = spacing,
        dzMIN = np.min(dz),
        dzMAX = np.max(dz),
        dzbMIN = np.min(dzb),
        dzbMAX = np.max(dzb)
    )


def _storage2fine(storage: np.ndarray, fine: np.ndarray) -> np.ndarray:
    """For each storage level, the index of the fine level just below it."""
    index = np.searchsorted(fine, storage, side = "right") - 1
    return np.clip(index, 0, len(fine) - 1)


def _fine2storage(storage: np.ndarray, fine: np.ndarray) -> np.ndarray:
    """For each fine level, the index of the storage level just below it."""
    index = np.searchsorted(storage, fine, side = "right") - 1
    return np.clip(index, 0, len(storage) - 1)


def compute_fine_vertical_grid(vertical: VerticalLevels) -> FineVerticalGrid:
    """Build the equally spaced solver grid shared by the ice and the bedrock.

    The fine bedrock grid has its top level at 0 and the same spacing as the
    ice, so when Lbz is not a multiple of dz_fine its deepest level lies below
    -Lbz (e.g. -300 m for Lbz = 250 m, dz_fine = 100 m). Bedrock values there
    are extrapolated along the gradient of the two deepest storage levels,
    and the geothermal flux is applied at that deepest fine level.
    """
    dz_fine = vertical.dzMIN
    if vertical.Mbz > 1:
        dz_fine = min(dz_fine, vertical.dzbMIN)

    Mz_fine = int(math.ceil(vertical.Lz / dz_fine - 1e-9)) + 1
    dz_fine = vertical.Lz / (Mz_fine - 1)
    zlevels_fine = dz_fine * np.arange(Mz_fine)

    if vertical.Mbz > 1:
        Mbz_fine = int(math.ceil(vertical.Lbz / dz_fine - 1e-9)) + 1
        zblevels_fine = -dz_fine * np.arange(Mbz_fine - 1, -1, -1)
    else:
        zblevels_fine = np.zeros(1)

    zlevels = np.asarray(vertical.zlevels)
    zblevels = np.asarray(vertical.zblevels)

    return FineVerticalGrid(
        zlevels_fine = zlevels_fine,
        zblevels_fine = zblevels_fine,
        dz_fine = dz_fine,
        ice_storage2fine = _storage2fine(zlevels, zlevels_fine),
        ice_fine2storage = _fine2storage(zlevels, zlevels_fine),
        bed_storage2fine = _storage2fine(zblevels, zblevels_fine),
        bed_fine2storage = _fine2storage(zblevels, zblevels_fine)
    )


def _interpolate(values: jax.Array, source: jax.Array, target: jax.Array, below: jax.Array) -> jax.Array:
    """Piecewise-linear interpolation, given the source level just below each target level.

    Targets below the lowest source level are extrapolated linearly; targets
    above the highest take its value.
    """
    if source.shape[0] == 1:
        return jnp.full(target.shape[0], values[0])

    upper = jnp.minimum(below + 1, source.shape[0] - 1)
    span = source[upper] - source[below]
    weight = jnp.where(span > 0, (target - source[below]) / jnp.where(span > 0, span, 1.0), 0.0)
    weight = jnp.minimum(weight, 1.0)

    return values[below] + weight * (values[upper] - values[below])


class DistributedGrid(eqx.Module):
    """The model grid: horizontal decomposition plus storage and fine vertical levels."""

    Mx: int = eqx.field(converter = int, static = True)
    My: int = eqx.field(converter = int, static = True)
    dx: float = eqx.field(converter = float, static = True)
    dy: float = eqx.field(converter = float, static = True)
    n_procs_x: int = eqx.field(converter = int, static = True)
    n_procs_y: int = eqx.field(converter = int, static = True)

    vertical: VerticalLevels
    fine: FineVerticalGrid = eqx.field(init = False)
    patches: tuple = eqx.field(init = False, static = True)

    stencil_width: int = eqx.field(default = 1, static = True)

    def __post_init__(self):
        self.fine = compute_fine_vertical_grid(self.vertical)
        self.patches = tuple(
            create_patch_decomposition(self.Mx, self.My, self.n_procs_x, self.n_procs_y)
        )

    @classmethod
    def from_grid(cls, grid, vertical: VerticalLevels, n_procs_x: int = 1, n_procs_y: int = 1):
        """Build a distributed grid from a Landlab RasterModelGrid and vertical levels."""
        n_rows, n_cols = grid.shape
        return cls(
            Mx = n_cols,
            My = n_rows,
            dx = grid.dx,
            dy = grid.dy,
            n_procs_x = n_procs_x,
            n_procs_y = n_procs_y,
            vertical = vertical
        )

    @property
    def Mz(self) -> int:
        return self.vertical.Mz

    @property
    def Mbz(self) -> int:
        return self.vertical.Mbz

    @property
    def zlevels(self) -> jax.Array:
        return self.vertical.zlevels

    @property
    def zblevels(self) -> jax.Array:
        return self.vertical.zblevels

    def patch(self, rank: int) -> HorizontalPatch:
        return self.patches[rank]

    def k_below_height(self, height: float) -> int:
        """Return the highest storage index k with zlevels[k] <= height."""
        tolerance = 1e-6
        if height < -tolerance or height > self.vertical.Lz + tolerance:
            raise ValueError(
                f"Height {height} is outside of the ice extent [0, {self.vertical.Lz}]."
            )

        index = int(np.searchsorted(np.asarray(self.zlevels), height, side = "right")) - 1
        return max(index, 0)

    def ice_column_to_fine(self, values: jax.Array) -> jax.Array:
        """Interpolate a column on ice storage levels onto the fine grid."""
        return _interpolate(
            jnp.asarray(values), self.zlevels, self.fine.zlevels_fine, self.fine.ice_fine2storage
        )

    def bed_column_to_fine(self, values: jax.Array) -> jax.Array:
        """Interpolate a column on bedrock storage levels onto the fine grid."""
        return _interpolate(
            jnp.asarray(values), self.zblevels, self.fine.zblevels_fine, self.fine.bed_fine2storage
        )

    def ice_column_from_fine(self, values: jax.Array) -> jax.Array:
        """Interpolate a column on the fine grid back onto ice storage levels."""
        return _interpolate(
            jnp.asarray(values), self.fine.zlevels_fine, self.zlevels, self.fine.ice_storage2fine
        )

    def bed_column_from_fine(self, values: jax.Array) -> jax.Array:
        """Interpolate a column on the fine grid back onto bedrock storage levels."""
        return _interpolate(
            jnp.asarray(values), self.fine.zblevels_fine, self.zblevels, self.fine.bed_storage2fine
        )

    def map_node_values_to_xy(self, values_at_node) -> jax.Array:
        """Reshape values at Landlab raster nodes (row-major) into an (Mx, My) array."""
        return jnp.asarray(values_at_node).reshape(self.My, self.Mx).T


def freeze_grid(grid, vertical: VerticalLevels, n_procs_x: int = 1, n_procs_y: int = 1) -> DistributedGrid:
    """Convert an existing Landlab raster grid to a new DistributedGrid."""
    return DistributedGrid.from_grid(grid, vertical, n_procs_x, n_procs_y)
