"""Tridiagonal systems for conservation of energy in one column of ice and bedrock.

Three systems share the same lifecycle per column:

    system = system.set_indices_and_clear(i, j, ks)
    system = system.set_column(...)            # physical inputs
    system = system.set_boundary_values(...)
    x = system.solve_this_column()

Each setter returns an updated copy of the system.

Vertical advection in the ice uses the BOMBPROOF scheme: lam = 1 gives
centered differences (more accurate), lam = 0 gives first-order upwinding
(unconditionally stable), and values in between blend the two.
"""

import abc
from typing import ClassVar

import jax
import jax.numpy as jnp
import equinox as eqx

from jax import config
config.update("jax_enable_x64", True)

from utils.errors import SingularSystemError
from utils.tridiagonal import TridiagonalSystem, report_column
from components.enthalpy_config import EnthalpyConfig


class ColumnState(eqx.Module):
    """Working arrays for one column on the fine vertical grid."""

    enthalpy: jax.Array = eqx.field(converter = jnp.asarray)
    enthalpy_cts: jax.Array = eqx.field(converter = jnp.asarray)
    u: jax.Array = eqx.field(converter = jnp.asarray)
    v: jax.Array = eqx.field(converter = jnp.asarray)
    w: jax.Array = eqx.field(converter = jnp.asarray)
    strain_heating: jax.Array = eqx.field(converter = jnp.asarray)

    # Enthalpy at the east, west, north, and south neighbors, shape (4, Mz)
    enthalpy_neighbors: jax.Array = eqx.field(converter = jnp.asarray)
    bedrock_temperature: jax.Array = eqx.field(converter = jnp.asarray)

    @classmethod
    def zeros(cls, n_levels: int, n_bed_levels: int = 1):
        empty = jnp.zeros(n_levels)
        return cls(
            enthalpy = empty,
            enthalpy_cts = empty,
            u = empty,
            v = empty,
            w = empty,
            strain_heating = empty,
            enthalpy_neighbors = jnp.zeros((4, n_levels)),
            bedrock_temperature = jnp.zeros(n_bed_levels)
        )


def horizontal_source(column: ColumnState, ice_density: float, dx: float, dy: float) -> jax.Array:
    """Strain heating minus upwinded horizontal advection of enthalpy, at every level."""
    E = column.enthalpy
    east, west, north, south = column.enthalpy_neighbors

    dEdx = jnp.where(column.u < 0, (east - E) / dx, (E - west) / dx)
    dEdy = jnp.where(column.v < 0, (north - E) / dy, (E - south) / dy)

    return column.strain_heating / ice_density - column.u * dEdx - column.v * dEdy


def ice_rows(
    config: EnthalpyConfig,
    column: ColumnState,
    dt: float,
    dx: float,
    dy: float,
    dz: float,
    ks: int,
    lam: float,
    is_marginal: bool,
    enth_surface: float,
    enth_air: float
) -> tuple:
    """Coefficients (L, D, U, rhs) of the ice equations at every fine level.

    Interior rows 1 <= k < ks discretize diffusion, BOMBPROOF vertical
    advection, and (unless marginal) horizontal advection and strain heating.
    Row ks is Dirichlet at the surface enthalpy and rows above it are pinned
    to the air enthalpy. Row 0 is left for the caller to replace unless ks == 0.
    """
    n = column.enthalpy.shape[0]
    k = jnp.arange(n)

    ice_K = config.ice_thermal_conductivity / config.ice_specific_heat_capacity
    R = ice_K * dt / (config.ice_density * dz**2)
    AA = (dt / dz) * column.w

    upward = column.w >= 0
    L = jnp.where(upward, -R - AA * (1.0 - lam / 2.0), -R - AA * (lam / 2.0))
    D = jnp.where(upward, 1.0 + 2.0 * R + AA * (1.0 - lam), 1.0 + 2.0 * R - AA * (1.0 - lam))
    U = jnp.where(upward, -R + AA * (lam / 2.0), -R + AA * (1.0 - lam / 2.0))

    rhs = column.enthalpy
    if not is_marginal:
        rhs = rhs + dt * horizontal_source(column, config.ice_density, dx, dy)

    interior = (k >= 1) & (k < ks)

    L = jnp.where(interior, L, 0.0)
    D = jnp.where(interior, D, 1.0)
    U = jnp.where(interior, U, 0.0)
    rhs = jnp.where(interior, rhs, jnp.where(k == ks, enth_surface, enth_air))

    return L, D, U, rhs


class ColumnSystem(eqx.Module):
    """Assemble, solve, and report one column's tridiagonal system."""

    prefix: ClassVar[str] = "column"

    @abc.abstractmethod
    def assemble(self) -> TridiagonalSystem:
        raise NotImplementedError

    def solve_this_column(self) -> jax.Array:
        """Solve this column's system; a zero pivot raises SingularSystemError tagged with (i, j)."""
        system = self.assemble()

        try:
            return system.solve()
        except SingularSystemError as error:
            raise error.at_column(self.prefix, self.i, self.j) from None

    def report(self, solution, directory: str = ".") -> str:
        """Write this column's system and solution to a file."""
        return report_column(self.assemble(), solution, self.prefix, self.i, self.j, directory)


class IceEnthalpySystem(ColumnSystem):
    """Enthalpy in the ice only, on fine levels 0 .. Mz - 1."""

    prefix: ClassVar[str] = "iceenthOnly"

    config: EnthalpyConfig
    dt: float
    dx: float
    dy: float
    dz: float
    n_levels: int = eqx.field(static = True)

    column: ColumnState = eqx.field(init = False)

    i: int = -1
    j: int = -1
    ks: int = 0
    is_marginal: bool = False
    lam: float = 1.0
    enth_surface: float = 0.0
    enth_air: float = 0.0
    a0: float = 1.0
    a1: float = 0.0
    b0: float = 0.0
    has_level0: bool = False

    def __post_init__(self):
        self.column = ColumnState.zeros(self.n_levels)

    def set_indices_and_clear(self, i: int, j: int, ks: int):
        return eqx.tree_at(
            lambda s: (s.i, s.j, s.ks, s.column, s.has_level0),
            self,
            (i, j, ks, ColumnState.zeros(self.n_levels), False)
        )

    def set_column(self, column: ColumnState):
        return eqx.tree_at(lambda s: s.column, self, column)

    def set_scheme_params(self, is_marginal: bool, lam: float):
        return eqx.tree_at(lambda s: (s.is_marginal, s.lam), self, (is_marginal, lam))

    def set_boundary_values(self, enth_surface: float, enth_air: float):
        return eqx.tree_at(
            lambda s: (s.enth_surface, s.enth_air), self, (enth_surface, enth_air)
        )

    def set_level0_equation(self, a0: float, a1: float, rhs: float):
        """Set the equation a0 E[0] + a1 E[1] = rhs at the base of the ice."""
        return eqx.tree_at(
            lambda s: (s.a0, s.a1, s.b0, s.has_level0), self, (a0, a1, rhs, True)
        )

    def assemble(self) -> TridiagonalSystem:
        L, D, U, rhs = ice_rows(
            self.config, self.column, self.dt, self.dx, self.dy, self.dz,
            self.ks, self.lam, self.is_marginal, self.enth_surface, self.enth_air
        )

        if self.ks > 0:
            if not self.has_level0:
                raise ValueError(f"Level-0 equation was not set for column ({self.i}, {self.j}).")

            D = D.at[0].set(self.a0)
            U = U.at[0].set(self.a1)
            rhs = rhs.at[0].set(self.b0)

        return TridiagonalSystem(L[1:], D, U[:-1], rhs)


class BedrockSystem(ColumnSystem):
    """Temperature in the bedrock thermal layer only, on fine levels 0 .. Mbz - 1."""

    prefix: ClassVar[str] = "bedrockOnly"

    config: EnthalpyConfig
    dt: float
    dzb: float
    n_levels: int = eqx.field(static = True)

    bedrock_temperature: jax.Array = eqx.field(converter = jnp.asarray, init = False)

    i: int = -1
    j: int = -1
    top_temperature: float = 0.0
    geothermal_flux: float = 0.0

    def __post_init__(self):
        self.bedrock_temperature = jnp.zeros(self.n_levels)

    @property
    def rho_c(self) -> float:
        return self.config.bedrock_thermal_density * self.config.bedrock_thermal_specific_heat_capacity

    def set_indices_and_clear(self, i: int, j: int, ks: int = -1):
        return eqx.tree_at(
            lambda s: (s.i, s.j, s.bedrock_temperature),
            self,
            (i, j, jnp.zeros(self.n_levels))
        )

    def set_column(self, bedrock_temperature: jax.Array):
        return eqx.tree_at(lambda s: s.bedrock_temperature, self, jnp.asarray(bedrock_temperature))

    def set_boundary_values(self, top_temperature: float, geothermal_flux: float):
        """Dirichlet temperature at the top of the bedrock and geothermal flux at its base."""
        return eqx.tree_at(
            lambda s: (s.top_temperature, s.geothermal_flux),
            self,
            (top_temperature, geothermal_flux)
        )

    def assemble(self) -> TridiagonalSystem:
        n = self.n_levels
        R = self.config.bedrock_thermal_conductivity * self.dt / (self.rho_c * self.dzb**2)

        L = jnp.full(n, -R)
        D = jnp.full(n, 1.0 + 2.0 * R)
        U = jnp.full(n, -R)
        rhs = self.bedrock_temperature

        # Geothermal flux enters through the bottom; mirror the level above
        U = U.at[0].set(-2.0 * R)
        rhs = rhs.at[0].add(2.0 * self.dt * self.geothermal_flux / (self.rho_c * self.dzb))

        L = L.at[n - 1].set(0.0)
        D = D.at[n - 1].set(1.0)
        rhs = rhs.at[n - 1].set(self.top_temperature)

        return TridiagonalSystem(L[1:], D, U[:-1], rhs)

    def extract_heat_flux(self, solution: jax.Array) -> jax.Array:
        """Upward heat flux at the top of the bedrock, in W m^-2."""
        return -self.config.bedrock_thermal_conductivity * (solution[-1] - solution[-2]) / self.dzb


class CombinedSystem(ColumnSystem):
    """Bedrock temperature and ice enthalpy solved together, for cold grounded bases.

    Unknowns are ordered from the bottom of the bedrock to the top of the
    column: x[0 .. Mbz - 2] are bedrock levels, x[Mbz - 1] is the base of
    the ice, and x[Mbz - 1 + k] is ice level k. Bedrock unknowns are carried
    as c_i (T - T_0), the enthalpy cold ice would have at that temperature,
    so that temperature is continuous across the interface.
    """

    prefix: ClassVar[str] = "combined"

    config: EnthalpyConfig
    dt: float
    dx: float
    dy: float
    dz: float
    dzb: float
    n_levels: int = eqx.field(static = True)
    n_bed_levels: int = eqx.field(static = True)

    column: ColumnState = eqx.field(init = False)

    i: int = -1
    j: int = -1
    ks: int = 0
    is_marginal: bool = False
    lam: float = 1.0
    enth_surface: float = 0.0
    enth_air: float = 0.0
    geothermal_flux: float = 0.0
    frictional_heating: float = 0.0

    def __post_init__(self):
        if self.n_bed_levels < 3:
            raise ValueError(
                f"The combined system needs at least three bedrock levels, got {self.n_bed_levels}."
            )
        self.column = ColumnState.zeros(self.n_levels, self.n_bed_levels)

    @property
    def size(self) -> int:
        return self.n_bed_levels + self.n_levels - 1

    def set_indices_and_clear(self, i: int, j: int, ks: int):
        return eqx.tree_at(
            lambda s: (s.i, s.j, s.ks, s.column),
            self,
            (i, j, ks, ColumnState.zeros(self.n_levels, self.n_bed_levels))
        )

    def set_column(self, column: ColumnState):
        return eqx.tree_at(lambda s: s.column, self, column)

    def set_scheme_params(self, is_marginal: bool, lam: float):
        return eqx.tree_at(lambda s: (s.is_marginal, s.lam), self, (is_marginal, lam))

    def set_boundary_values(
        self, enth_surface: float, enth_air: float, geothermal_flux: float, frictional_heating: float
    ):
        return eqx.tree_at(
            lambda s: (s.enth_surface, s.enth_air, s.geothermal_flux, s.frictional_heating),
            self,
            (enth_surface, enth_air, geothermal_flux, frictional_heating)
        )

    def assemble(self) -> TridiagonalSystem:
        cfg = self.config
        c_i = cfg.ice_specific_heat_capacity
        T_0 = cfg.enthalpy_converter_reference_temperature
        rho_c_ice = cfg.ice_density * c_i
        rho_c_bed = cfg.bedrock_thermal_density * cfg.bedrock_thermal_specific_heat_capacity
        nb = self.n_bed_levels

        # Bedrock rows, in enthalpy-equivalent units
        Rb = cfg.bedrock_thermal_conductivity * self.dt / (rho_c_bed * self.dzb**2)
        Lb = jnp.full(nb - 1, -Rb)
        Db = jnp.full(nb - 1, 1.0 + 2.0 * Rb)
        Ub = jnp.full(nb - 1, -Rb).at[0].set(-2.0 * Rb)
        rhs_b = c_i * (self.column.bedrock_temperature[:nb - 1] - T_0)
        rhs_b = rhs_b.at[0].add(
            c_i * 2.0 * self.dt * self.geothermal_flux / (rho_c_bed * self.dzb)
        )

        # Ice rows
        Li, Di, Ui, rhs_i = ice_rows(
            cfg, self.column, self.dt, self.dx, self.dy, self.dz,
            self.ks, self.lam, self.is_marginal, self.enth_surface, self.enth_air
        )

        # Interface: energy balance of the half cells above and below the bed
        if self.ks == 0:
            L0, D0, U0, rhs0 = 0.0, 1.0, 0.0, self.enth_surface
        else:
            heat_capacity = 0.5 * (rho_c_ice * self.dz + rho_c_bed * self.dzb)
            R_ice = cfg.ice_thermal_conductivity * self.dt / (heat_capacity * self.dz)
            R_bed = cfg.bedrock_thermal_conductivity * self.dt / (heat_capacity * self.dzb)

            L0 = -R_bed
            D0 = 1.0 + R_ice + R_bed
            U0 = -R_ice
            rhs0 = self.column.enthalpy[0] + c_i * self.dt * self.frictional_heating / heat_capacity

            if not self.is_marginal:
                ice_fraction = rho_c_ice * self.dz / (rho_c_ice * self.dz + rho_c_bed * self.dzb)
                rhs0 = rhs0 + ice_fraction * self.dt * horizontal_source(
                    self.column, cfg.ice_density, self.dx, self.dy
                )[0]

        lower = jnp.concatenate([Lb[1:], jnp.array([L0]), Li[1:]])
        diagonal = jnp.concatenate([Db, jnp.array([D0]), Di[1:]])
        upper = jnp.concatenate([Ub, jnp.array([U0]), Ui[1:-1]])
        rhs = jnp.concatenate([rhs_b, jnp.array([rhs0]), rhs_i[1:]])

        return TridiagonalSystem(lower, diagonal, upper, rhs)

    def split_solution(self, solution: jax.Array) -> tuple:
        """Split the solution into bedrock temperatures below the interface and ice enthalpy."""
        nb = self.n_bed_levels
        c_i = self.config.ice_specific_heat_capacity
        T_0 = self.config.enthalpy_converter_reference_temperature

        bedrock_temperature = solution[:nb - 1] / c_i + T_0
        enthalpy = solution[nb - 1:]

        return bedrock_temperature, enthalpy
