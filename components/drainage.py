"""Drain liquid water in excess of a fixed fraction to the base of the ice.

Heuristic: once the liquid water fraction at a level exceeds omega_max, all
of the excess is moved to the bed. The latent heat carried by the drained
water is not accounted for anywhere.
"""

import jax
import jax.numpy as jnp

from components.enthalpy_converter import EnthalpyConverter


def drain_excess_liquid(
    converter: EnthalpyConverter,
    omega_max: float,
    thickness: float,
    z: float,
    dz: float,
    enthalpy: float
) -> tuple:
    """Drain one ice segment [z, z + dz]; return the new enthalpy and the drained water thickness."""
    pressure = converter.pressure_from_depth(thickness - z)
    omega = converter.water_fraction_limited(enthalpy, pressure)

    if omega > omega_max:
        drained = (omega - omega_max) * dz
        return converter.enthalpy_at_water_fraction(omega_max, pressure), drained

    return jnp.asarray(enthalpy), jnp.asarray(0.0)


def drain_column(
    converter: EnthalpyConverter,
    omega_max: float,
    thickness: float,
    zlevels: jax.Array,
    dz: float,
    enthalpy: jax.Array,
    ks: int
) -> tuple:
    """Drain every level below the surface index ks at once.

    Returns the drained enthalpy column and the drained thickness at each level.
    """
    pressure = converter.pressure_from_depth(thickness - zlevels)
    omega = converter.water_fraction_limited(enthalpy, pressure)
    below_surface = jnp.arange(enthalpy.shape[0]) < ks

    excess = below_surface & (omega > omega_max)

    new_enthalpy = jnp.where(
        excess,
        converter.enthalpy_at_water_fraction(omega_max, pressure),
        enthalpy
    )
    drained = jnp.where(excess, (omega - omega_max) * dz, 0.0)

    return new_enthalpy, drained
