"""Update ice enthalpy, bedrock temperature, basal melt, and stored basal water for one time step.

Each column is solved independently, using only the previous step's fields,
the current couplers, and the ghost values of its horizontal neighbors. New
values are written into separate buffers; the caller exchanges ghosts of the
new enthalpy once the whole patch is done.
"""

import enum
import math
import logging
from typing import NamedTuple

import numpy as np
import jax
import jax.numpy as jnp
import equinox as eqx

from jax import config
config.update("jax_enable_x64", True)

from utils.errors import (
    FullyMeltedError, InvalidConfigurationError, MissingCollaboratorError, SingularSystemError
)
from utils.distributed_grid import DistributedGrid
from utils.column_field import halo_exchange
from utils.tridiagonal import report_column_solve_error
from components.enthalpy_config import EnthalpyConfig
from components.enthalpy_converter import EnthalpyConverter
from components.column_systems import (
    ColumnState, IceEnthalpySystem, BedrockSystem, CombinedSystem, horizontal_source
)
from components.drainage import drain_column
from components.model_state import ModelState

logger = logging.getLogger(__name__)


class BasalState(enum.Enum):
    """Thermal state of the base of a column, which selects the column system."""

    GROUNDED_COLD_WITH_BEDROCK = "grounded_cold_with_bedrock"
    GROUNDED_COLD_NO_BEDROCK = "grounded_cold_no_bedrock"
    GROUNDED_TEMPERATE = "grounded_temperate"
    FLOATING = "floating"


def classify_basal_state(basal_enthalpy: float, basal_enthalpy_cts: float, floating: bool, Mbz_fine: int) -> BasalState:
    """Classify the base of a column from its enthalpy, the floatation mask, and the bedrock layer."""
    if floating:
        return BasalState.FLOATING

    if basal_enthalpy < basal_enthalpy_cts:
        if Mbz_fine > 1:
            return BasalState.GROUNDED_COLD_WITH_BEDROCK
        return BasalState.GROUNDED_COLD_NO_BEDROCK

    return BasalState.GROUNDED_TEMPERATE


def enthalpy_cts_column(
    converter: EnthalpyConverter,
    zlevels: jax.Array,
    dz: float,
    thickness: float,
    ks: int,
    enthalpy: jax.Array,
    w: jax.Array
) -> tuple:
    """Compute the CTS enthalpy at every fine level, and lambda for BOMBPROOF.

    Lambda starts at 1 (centered, more accurate). It is 0 if any ice level is
    temperate; otherwise it is limited by the local Peclet number so that
    strong vertical advection falls back towards upwinding. Levels above the
    surface get the CTS enthalpy at atmospheric pressure.
    """
    cfg = converter.config
    in_ice = jnp.arange(enthalpy.shape[0]) <= ks

    enthalpy_cts = converter.enthalpy_cts(converter.pressure_from_depth(thickness - zlevels))

    temperate = in_ice & (enthalpy >= enthalpy_cts)
    if bool(jnp.any(temperate)):
        return enthalpy_cts, 0.0

    ice_rho_c = cfg.ice_density * cfg.ice_specific_heat_capacity
    denom = (jnp.abs(w) + 1e-6 / cfg.seconds_per_year) * ice_rho_c * dz
    bound = jnp.where(in_ice, 2.0 * cfg.ice_thermal_conductivity / denom, 1.0)

    return enthalpy_cts, float(jnp.minimum(1.0, jnp.min(bound)))


def is_marginal(neighbor_thickness, threshold: float) -> bool:
    """A column is marginal if all eight of its neighbors are thinner than the threshold."""
    return bool(jnp.all(jnp.asarray(neighbor_thickness) < threshold))


def basal_boundary_row(
    config: EnthalpyConfig,
    basal_state: BasalState,
    column: ColumnState,
    basal_heat_flux: float,
    marginal: bool,
    dt: float,
    dx: float,
    dy: float,
    dz: float
) -> tuple:
    """Equation a0 E[0] + a1 E[1] = rhs at the base of the ice, and the flux weight alpha.

    A cold base (without a bedrock layer) knows its heat flux. A warm base
    takes either an upwinded outflow equation (w[0] < 0) or a Dirichlet
    condition at the melting point, and just above the melting point this is
    blended with the flux condition: alpha goes from 1 at the CTS to 0 at
    the top of the warm-base window. Floating bases are never blended.
    """
    if basal_state is BasalState.GROUNDED_COLD_WITH_BEDROCK:
        raise ValueError("Cold grounded bases with a bedrock layer are solved by the combined system.")

    C = config.ice_specific_heat_capacity * dz / jnp.asarray(config.ice_thermal_conductivity)
    flux_rhs = C * basal_heat_flux

    if basal_state is BasalState.GROUNDED_COLD_NO_BEDROCK:
        return 1.0, -1.0, flux_rhs, 1.0

    E0 = column.enthalpy[0]
    Es0 = column.enthalpy_cts[0]
    w0 = column.w[0]

    if w0 < 0:
        rhs = E0
        if not marginal:
            rhs = rhs + dt * horizontal_source(column, config.ice_density, dx, dy)[0]
        nuw0 = (dt / dz) * w0
        a0 = 1.0 - nuw0
        a1 = nuw0
    else:
        rhs = Es0
        a0 = 1.0
        a1 = 0.0

    window = config.warm_base_enthalpy_window
    if basal_state is BasalState.FLOATING or not E0 < Es0 + window:
        alpha = 0.0
    else:
        alpha = 1.0 - (E0 - Es0) / window

    rhs = (1.0 - alpha) * rhs + alpha * flux_rhs
    a0 = (1.0 - alpha) * a0 + alpha
    a1 = (1.0 - alpha) * a1 - alpha

    return a0, a1, rhs, alpha


class EnthalpyStepDiagnostics(eqx.Module):
    """Counts reported by one step; add them up across patches."""

    vertical_sacrifice_count: int = 0
    liquified_count: int = 0
    liquified_volume: float = 0.0 # m^3

    def __add__(self, other):
        return EnthalpyStepDiagnostics(
            self.vertical_sacrifice_count + other.vertical_sacrifice_count,
            self.liquified_count + other.liquified_count,
            self.liquified_volume + other.liquified_volume
        )


class ColumnUpdate(NamedTuple):
    enthalpy: jax.Array
    bedrock_temperature: jax.Array
    basal_melt_rate: float
    stored_basal_water: float
    sacrificed: bool
    liquified_count: int


class EnthalpyDrainageStep(eqx.Module):
    """Conservation of energy in ice and bedrock, plus drainage of excess water, for one patch."""

    grid: DistributedGrid
    config: EnthalpyConfig
    dt: float # s

    converter: EnthalpyConverter = eqx.field(init = False)
    ice_system: IceEnthalpySystem = eqx.field(init = False)
    bedrock_system: BedrockSystem = eqx.field(init = False)
    combined_system: CombinedSystem = eqx.field(init = False)

    def __post_init__(self):
        fine = self.grid.fine
        dz = fine.dz_fine

        self.converter = EnthalpyConverter(self.config)
        self.ice_system = IceEnthalpySystem(
            self.config, self.dt, self.grid.dx, self.grid.dy, dz, fine.Mz_fine
        )
        if fine.Mbz_fine > 1:
            self.bedrock_system = BedrockSystem(self.config, self.dt, dz, fine.Mbz_fine)
        else:
            self.bedrock_system = None

        if fine.Mbz_fine > 2:
            self.combined_system = CombinedSystem(
                self.config, self.dt, self.grid.dx, self.grid.dy, dz, dz, fine.Mz_fine, fine.Mbz_fine
            )
        else:
            self.combined_system = None

        logger.debug(
            "Enthalpy step constants: dt = %.6e s, dz_fine = %.6e m, Mz_fine = %d, Mbz_fine = %d, "
            "ice k/c = %.6e, warm-base window = %.6e J/kg",
            self.dt, dz, fine.Mz_fine, fine.Mbz_fine,
            self.config.ice_thermal_conductivity / self.config.ice_specific_heat_capacity,
            self.config.warm_base_enthalpy_window
        )

    def check_inputs(self, state: ModelState, atmosphere, ocean):
        """Check everything that does not depend on a particular column."""
        if self.grid.fine.Mbz_fine == 2:
            raise InvalidConfigurationError(
                "A fine bedrock grid with exactly two levels is not supported; use one, or three or more."
            )

        if atmosphere is None:
            raise MissingCollaboratorError("No atmosphere coupler was provided.")

        if ocean is None:
            raise MissingCollaboratorError("No ocean coupler was provided.")

        state.check_complete()

    def update(self, state: ModelState, atmosphere, ocean, view_column = None, report_dir = None):
        """Run one step on the columns owned by this patch.

        Returns the new state (ghosts of new fields are stale) and the
        diagnostics for this patch. Raises SingularSystemError if any column
        cannot be solved, in which case no state is returned.
        """
        self.check_inputs(state, atmosphere, ocean)

        patch = state.patch
        fine = self.grid.fine

        enthalpy = np.zeros((patch.xm, patch.ym, self.grid.Mz))
        bedrock_temperature = np.zeros((patch.xm, patch.ym, self.grid.Mbz))
        basal_melt_rate = np.zeros((patch.xm, patch.ym))
        stored_basal_water = np.zeros((patch.xm, patch.ym))

        sacrificed = 0
        liquified = 0

        for i, j in patch.owned_columns():
            view = view_column is not None and tuple(view_column) == (i, j)
            result = self.update_column(state, atmosphere, ocean, i, j, view, report_dir)

            li, lj = i - patch.xs, j - patch.ys
            enthalpy[li, lj] = np.asarray(result.enthalpy)
            bedrock_temperature[li, lj] = np.asarray(result.bedrock_temperature)
            basal_melt_rate[li, lj] = result.basal_melt_rate
            stored_basal_water[li, lj] = result.stored_basal_water

            sacrificed += int(result.sacrificed)
            liquified += result.liquified_count

        new_state = eqx.tree_at(
            lambda s: (s.enthalpy, s.bedrock_temperature, s.basal_melt_rate, s.stored_basal_water),
            state,
            (
                state.enthalpy.with_owned(enthalpy),
                state.bedrock_temperature.with_owned(bedrock_temperature),
                state.basal_melt_rate.with_owned(basal_melt_rate),
                state.stored_basal_water.with_owned(stored_basal_water)
            )
        )

        diagnostics = EnthalpyStepDiagnostics(
            vertical_sacrifice_count = sacrificed,
            liquified_count = liquified,
            liquified_volume = liquified * fine.dz_fine * self.grid.dx * self.grid.dy
        )

        logger.debug(
            "Patch %d: %d columns, %d with lambda < 1, %d liquified levels",
            patch.rank, patch.xm * patch.ym, sacrificed, liquified
        )

        return new_state, diagnostics

    def _solve(self, system, view: bool, report_dir):
        solution = system.solve_this_column()

        if view:
            system.report(solution, report_dir if report_dir is not None else ".")

        return solution

    def _basal_temperature(self, enthalpy: float, pressure: float) -> tuple:
        """Temperature at the base of the ice, and 1 if the ice there has fully melted."""
        try:
            return self.converter.absolute_temperature(enthalpy, pressure), 0
        except FullyMeltedError:
            return self.converter.melting_temperature(pressure), 1

    def update_column(self, state: ModelState, atmosphere, ocean, i: int, j: int, view: bool = False, report_dir = None) -> ColumnUpdate:
        """Solve one column; reads only the previous state and couplers."""
        cfg = self.config
        conv = self.converter
        grid = self.grid
        fine = grid.fine
        dz = fine.dz_fine
        z = fine.zlevels_fine

        thickness = float(state.ice_thickness(i, j))
        ks = int(math.floor(thickness / dz))

        if ks > fine.Mz_fine - 1:
            raise InvalidConfigurationError(
                f"Ice thickness {thickness} m at ({i}, {j}) exceeds the height of the domain, {grid.vertical.Lz} m."
            )

        marginal = is_marginal(state.ice_thickness.neighbors8(i, j), cfg.marginal_thickness_threshold)
        floating = bool(state.floating_mask(i, j))

        # Enthalpy and pressure at the boundaries of the ice
        surface_temperature = atmosphere.surface_temperature(i, j)
        p_basal = conv.pressure_from_depth(thickness)
        p_ks = conv.pressure_from_depth(thickness - z[ks])
        enth_air = conv.enthalpy_permissive(surface_temperature, 0.0, cfg.surface_pressure)
        enth_ks = conv.enthalpy_permissive(surface_temperature, 0.0, p_ks)

        E = grid.ice_column_to_fine(state.enthalpy(i, j))
        w = grid.ice_column_to_fine(state.w(i, j))
        Tb = grid.bed_column_to_fine(state.bedrock_temperature(i, j))

        enthalpy_cts, lam = enthalpy_cts_column(conv, z, dz, thickness, ks, E, w)

        column = ColumnState(
            enthalpy = E,
            enthalpy_cts = enthalpy_cts,
            u = grid.ice_column_to_fine(state.u(i, j)),
            v = grid.ice_column_to_fine(state.v(i, j)),
            w = w,
            strain_heating = grid.ice_column_to_fine(state.strain_heating(i, j)),
            enthalpy_neighbors = jnp.stack(
                [grid.ice_column_to_fine(neighbor) for neighbor in state.enthalpy.star(i, j)]
            ),
            bedrock_temperature = Tb
        )

        geothermal_flux = float(state.geothermal_flux(i, j))
        frictional_heating = float(state.basal_frictional_heating(i, j))

        basal_state = classify_basal_state(E[0], enthalpy_cts[0], floating, fine.Mbz_fine)
        liquified = 0

        if basal_state is BasalState.GROUNDED_COLD_WITH_BEDROCK:
            system = (
                self.combined_system
                .set_indices_and_clear(i, j, ks)
                .set_column(column)
                .set_scheme_params(marginal, lam)
                .set_boundary_values(enth_ks, enth_air, geothermal_flux, frictional_heating)
            )
            solution = self._solve(system, view, report_dir)
            Tb_below, Enth_new = system.split_solution(solution)

            # The ice at the interface could in extreme cases have fully melted
            T_interface, melted = self._basal_temperature(Enth_new[0], p_basal)
            liquified += melted
            Tb_new = jnp.concatenate([Tb_below, jnp.atleast_1d(T_interface)])

            melt_rate = 0.0

        else:
            if fine.Mbz_fine > 1:
                Tb_top = ocean.subshelf_temperature(i, j) if floating else conv.melting_temperature(p_basal)
                system = (
                    self.bedrock_system
                    .set_indices_and_clear(i, j)
                    .set_column(Tb)
                    .set_boundary_values(Tb_top, geothermal_flux)
                )
                Tb_new = self._solve(system, view, report_dir)
                hf_base = float(system.extract_heat_flux(Tb_new))
            else:
                Tb_new = None
                hf_base = geothermal_flux

            if basal_state is BasalState.FLOATING:
                melt_rate = ocean.subshelf_mass_flux(i, j)
            elif basal_state is BasalState.GROUNDED_COLD_NO_BEDROCK:
                melt_rate = 0.0
            else:
                melt_rate = (hf_base + frictional_heating) / (cfg.ice_density * cfg.water_latent_heat_fusion)

            a0, a1, rhs, alpha = basal_boundary_row(
                cfg, basal_state, column, hf_base + frictional_heating, marginal,
                self.dt, grid.dx, grid.dy, dz
            )

            # Energy routed through the blended flux condition does not also melt ice
            if basal_state is not BasalState.GROUNDED_COLD_NO_BEDROCK:
                melt_rate *= 1.0 - float(alpha)

            system = (
                self.ice_system
                .set_indices_and_clear(i, j, ks)
                .set_column(column)
                .set_scheme_params(marginal, lam)
                .set_boundary_values(enth_ks, enth_air)
                .set_level0_equation(a0, a1, rhs)
            )
            Enth_new = self._solve(system, view, report_dir)

        melt_rate = float(melt_rate)

        # Basal melt adds water to the till
        stored_water = float(state.stored_basal_water(i, j))
        if not floating:
            stored_water += melt_rate * self.dt

        # Fully melted levels are counted before drainage caps their water content
        below_surface = jnp.arange(fine.Mz_fine) < ks
        p = conv.pressure_from_depth(thickness - z)
        liquified += int(jnp.sum(below_surface & conv.is_liquified(Enth_new, p)))

        Enth_new, drained = drain_column(
            conv, cfg.liquid_water_fraction_max, thickness, z, dz, Enth_new, ks
        )
        drained_total = float(jnp.sum(drained))

        if not floating:
            melt_rate += drained_total / self.dt
            stored_water += drained_total

        # Without a bedrock layer the single bedrock level takes its value from the ice or ocean
        if fine.Mbz_fine == 1:
            if floating:
                Tb_new = jnp.atleast_1d(ocean.subshelf_temperature(i, j))
            else:
                T_base, melted = self._basal_temperature(Enth_new[0], p_basal)
                liquified += melted
                Tb_new = jnp.atleast_1d(T_base)

        if cfg.update_stored_water:
            if floating:
                stored_water = cfg.hmelt_max
            elif ks == 0:
                stored_water = 0.0
            else:
                stored_water = max(0.0, min(cfg.hmelt_max, stored_water))
        else:
            stored_water = float(state.stored_basal_water(i, j))

        return ColumnUpdate(
            enthalpy = grid.ice_column_from_fine(Enth_new),
            bedrock_temperature = grid.bed_column_from_fine(Tb_new),
            basal_melt_rate = melt_rate,
            stored_basal_water = stored_water,
            sacrificed = lam < 1.0,
            liquified_count = liquified
        )


def run_enthalpy_step(step: EnthalpyDrainageStep, states: list, atmosphere, ocean, view_column = None, report_dir = None) -> tuple:
    """Run one step on every patch, then exchange ghosts of the new enthalpy.

    If a column system is singular, its dump is written to report_dir (when
    given) and the error propagates; no new states are returned.
    """
    new_states = []
    diagnostics = EnthalpyStepDiagnostics()

    for state in states:
        try:
            new_state, patch_diagnostics = step.update(state, atmosphere, ocean, view_column, report_dir)
        except SingularSystemError as error:
            if report_dir is not None:
                report_column_solve_error(error, report_dir)
            else:
                logger.error("%s", error)
            raise

        new_states.append(new_state)
        diagnostics = diagnostics + patch_diagnostics

    exchanged = halo_exchange(step.grid, [state.enthalpy for state in new_states])
    new_states = [
        eqx.tree_at(lambda s: s.enthalpy, state, enthalpy)
        for state, enthalpy in zip(new_states, exchanged)
    ]

    logger.info(
        "Enthalpy step: %d columns with lambda < 1, %d liquified levels (%.3e m^3)",
        diagnostics.vertical_sacrifice_count,
        diagnostics.liquified_count,
        diagnostics.liquified_volume
    )

    return new_states, diagnostics
