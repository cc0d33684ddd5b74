"""Conversions between enthalpy, temperature, liquid water fraction, and pressure.

Cold ice has E = c_i (T - T_0). At the pressure-melting temperature
T_m(p) = T_melt - beta p the enthalpy reaches E_s(p), and additional energy
goes into liquid water: omega = (E - E_s) / L, until E_l = E_s + L where the
ice is fully melted.
"""

import jax
import jax.numpy as jnp
import equinox as eqx

from jax import config
config.update("jax_enable_x64", True)

from utils.errors import FullyMeltedError
from components.enthalpy_config import EnthalpyConfig


class EnthalpyConverter(eqx.Module):
    """Stateless enthalpy-temperature-pressure conversion law."""

    config: EnthalpyConfig

    @property
    def c_i(self) -> float:
        return self.config.ice_specific_heat_capacity

    @property
    def L(self) -> float:
        return self.config.water_latent_heat_fusion

    @property
    def T_0(self) -> float:
        return self.config.enthalpy_converter_reference_temperature

    def pressure_from_depth(self, depth):
        """Hydrostatic pressure in the ice; the air above the surface has surface pressure."""
        depth = jnp.asarray(depth)
        return self.config.surface_pressure + jnp.where(
            depth > 0,
            self.config.ice_density * self.config.standard_gravity * depth,
            0.0
        )

    def melting_temperature(self, pressure):
        """Pressure-melting temperature."""
        return self.config.water_melting_point_temperature - self.config.beta_CC * pressure

    def enthalpy_cts(self, pressure):
        """Enthalpy at the cold-temperate transition, i.e. at the melting point with no water."""
        return self.c_i * (self.melting_temperature(pressure) - self.T_0)

    def enthalpy_liquid(self, pressure):
        """Enthalpy of fully melted ice."""
        return self.enthalpy_cts(pressure) + self.L

    def is_temperate(self, enthalpy, pressure):
        return enthalpy >= self.enthalpy_cts(pressure)

    def is_liquified(self, enthalpy, pressure):
        return enthalpy >= self.enthalpy_liquid(pressure)

    def cts(self, enthalpy, pressure):
        """Ratio E / E_s(p); the cold-temperate transition surface is where it equals one."""
        return enthalpy / self.enthalpy_cts(pressure)

    def water_fraction(self, enthalpy, pressure):
        """Liquid water fraction; zero in cold ice."""
        return jnp.where(
            self.is_temperate(enthalpy, pressure),
            (enthalpy - self.enthalpy_cts(pressure)) / self.L,
            0.0
        )

    def water_fraction_limited(self, enthalpy, pressure):
        """Liquid water fraction, limited to [0, 1]."""
        return jnp.clip(self.water_fraction(enthalpy, pressure), 0.0, 1.0)

    def temperature_permissive(self, enthalpy, pressure):
        """Absolute temperature, saturated at the melting point even if fully melted."""
        return jnp.where(
            self.is_temperate(enthalpy, pressure),
            self.melting_temperature(pressure),
            enthalpy / self.c_i + self.T_0
        )

    def absolute_temperature(self, enthalpy, pressure):
        """Absolute temperature; raises FullyMeltedError if E >= E_l(p)."""
        if bool(jnp.any(self.is_liquified(enthalpy, pressure))):
            raise FullyMeltedError(enthalpy, pressure)

        return self.temperature_permissive(enthalpy, pressure)

    def pressure_adjusted_temperature(self, enthalpy, pressure):
        """Temperature relative to the pressure-melting point, shifted to the melting point at zero pressure."""
        return (
            self.temperature_permissive(enthalpy, pressure)
            - self.melting_temperature(pressure)
            + self.config.water_melting_point_temperature
        )

    def enthalpy_permissive(self, temperature, water_fraction, pressure):
        """Enthalpy from temperature and water fraction, with T capped at the melting point.

        Below the melting point the water fraction is ignored.
        """
        T_m = self.melting_temperature(pressure)
        omega = jnp.clip(water_fraction, 0.0, 1.0)

        return jnp.where(
            temperature < T_m,
            self.c_i * (temperature - self.T_0),
            self.enthalpy_cts(pressure) + omega * self.L
        )

    def enthalpy_at_water_fraction(self, water_fraction, pressure):
        """Enthalpy of temperate ice with the given water fraction."""
        return self.enthalpy_cts(pressure) + water_fraction * self.L
