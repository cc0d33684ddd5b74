"""Boundary conditions from the atmosphere and ocean, given as fixed map-plane fields."""

import jax
import jax.numpy as jnp
import equinox as eqx

from jax import config
config.update("jax_enable_x64", True)


class GivenAtmosphere(eqx.Module):
    """Ice surface temperature at every column."""

    temperature: jax.Array = eqx.field(converter = jnp.asarray) # K

    @classmethod
    def from_constant(cls, grid, temperature: float):
        return cls(jnp.full((grid.Mx, grid.My), temperature))

    def surface_temperature(self, i: int, j: int) -> float:
        return float(self.temperature[i, j])


class GivenOcean(eqx.Module):
    """Mass flux and temperature at the base of floating ice."""

    mass_flux: jax.Array = eqx.field(converter = jnp.asarray) # m s^-1, ice equivalent
    temperature: jax.Array = eqx.field(converter = jnp.asarray) # K

    @classmethod
    def from_constant(cls, grid, mass_flux: float, temperature: float):
        return cls(
            mass_flux = jnp.full((grid.Mx, grid.My), mass_flux),
            temperature = jnp.full((grid.Mx, grid.My), temperature)
        )

    def subshelf_mass_flux(self, i: int, j: int) -> float:
        return float(self.mass_flux[i, j])

    def subshelf_temperature(self, i: int, j: int) -> float:
        return float(self.temperature[i, j])
