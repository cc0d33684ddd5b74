"""Convert whole three-dimensional fields between enthalpy, temperature, and liquid fraction.

All fields live on the ice storage levels of one patch. Pressure at each
level comes from the depth below the ice surface, H - z.
"""

import numpy as np
import jax
import jax.numpy as jnp

from jax import config
config.update("jax_enable_x64", True)

from utils.errors import FullyMeltedError
from utils.column_field import ColumnField
from components.enthalpy_converter import EnthalpyConverter


def pressure_field(converter: EnthalpyConverter, zlevels: jax.Array, thickness: ColumnField) -> jax.Array:
    """Pressure at every level of every column, including ghosts."""
    depth = thickness.values[..., None] - jnp.asarray(zlevels)
    return converter.pressure_from_depth(depth)


def enthalpy_from_cold_temperature(
    converter: EnthalpyConverter, zlevels: jax.Array, temperature: ColumnField, thickness: ColumnField
) -> ColumnField:
    """Enthalpy of ice with no liquid water, from temperature."""
    p = pressure_field(converter, zlevels, thickness)
    return ColumnField(temperature.patch, converter.enthalpy_permissive(temperature.values, 0.0, p))


def enthalpy_from_temperature_and_liquid_fraction(
    converter: EnthalpyConverter,
    zlevels: jax.Array,
    temperature: ColumnField,
    liquid_fraction: ColumnField,
    thickness: ColumnField
) -> ColumnField:
    """Enthalpy from temperature and liquid water fraction; the fraction only counts at the melting point."""
    p = pressure_field(converter, zlevels, thickness)
    return ColumnField(
        temperature.patch,
        converter.enthalpy_permissive(temperature.values, liquid_fraction.values, p)
    )


def temperature_from_enthalpy(
    converter: EnthalpyConverter, zlevels: jax.Array, enthalpy: ColumnField, thickness: ColumnField
) -> ColumnField:
    """Absolute temperature; raises FullyMeltedError at the first owned level that has fully melted."""
    p = pressure_field(converter, zlevels, thickness)
    melted = np.asarray(converter.is_liquified(enthalpy.values, p))[1:-1, 1:-1]

    if melted.any():
        li, lj, k = (int(n) for n in np.argwhere(melted)[0])
        patch = enthalpy.patch
        raise FullyMeltedError(
            float(enthalpy.values[li + 1, lj + 1, k]),
            float(p[li + 1, lj + 1, k]),
            location = (li + patch.xs, lj + patch.ys, k)
        )

    return ColumnField(enthalpy.patch, converter.temperature_permissive(enthalpy.values, p))


def liquid_fraction_from_enthalpy(
    converter: EnthalpyConverter, zlevels: jax.Array, enthalpy: ColumnField, thickness: ColumnField
) -> ColumnField:
    p = pressure_field(converter, zlevels, thickness)
    return ColumnField(enthalpy.patch, converter.water_fraction_limited(enthalpy.values, p))


def pressure_adjusted_temperature_from_enthalpy(
    converter: EnthalpyConverter, zlevels: jax.Array, enthalpy: ColumnField, thickness: ColumnField
) -> ColumnField:
    """Temperature relative to the pressure-melting point, in K."""
    p = pressure_field(converter, zlevels, thickness)
    return ColumnField(enthalpy.patch, converter.pressure_adjusted_temperature(enthalpy.values, p))


def cts_from_enthalpy(
    converter: EnthalpyConverter, zlevels: jax.Array, enthalpy: ColumnField, thickness: ColumnField
) -> ColumnField:
    """E / E_s; values of one or more mark temperate ice."""
    p = pressure_field(converter, zlevels, thickness)
    return ColumnField(enthalpy.patch, converter.cts(enthalpy.values, p))
