"""Physical constants and switches for the enthalpy and drainage model."""

import dataclasses
import equinox as eqx

from utils.errors import InvalidConfigurationError


class EnthalpyConfig(eqx.Module):
    """Immutable set of parameters, built once and shared by every component."""

    # Ice
    ice_density: float = 910.0 # kg m^-3
    ice_specific_heat_capacity: float = 2009.0 # J kg^-1 K^-1
    ice_thermal_conductivity: float = 2.10 # W m^-1 K^-1

    # Bedrock thermal layer
    bedrock_thermal_density: float = 3300.0 # kg m^-3
    bedrock_thermal_specific_heat_capacity: float = 1000.0 # J kg^-1 K^-1
    bedrock_thermal_conductivity: float = 3.0 # W m^-1 K^-1

    # Water and phase change
    water_latent_heat_fusion: float = 3.34e5 # J kg^-1
    water_melting_point_temperature: float = 273.15 # K
    beta_CC: float = 7.9e-8 # K Pa^-1
    enthalpy_converter_reference_temperature: float = 223.15 # K

    standard_gravity: float = 9.81 # m s^-2
    surface_pressure: float = 1.01325e5 # Pa

    # Drainage and basal water
    liquid_water_fraction_max: float = 0.01
    hmelt_max: float = 2.0 # m
    warm_base_flux_enthalpy_fraction: float = 0.003

    marginal_thickness_threshold: float = 100.0 # m
    seconds_per_year: float = 3.15569259747e7
    update_stored_water: bool = True

    def __post_init__(self):
        positive = [
            "ice_density", "ice_specific_heat_capacity",
            "bedrock_thermal_density", "bedrock_thermal_specific_heat_capacity",
            "water_latent_heat_fusion", "water_melting_point_temperature",
            "standard_gravity", "seconds_per_year"
        ]
        for name in positive:
            if not getattr(self, name) > 0:
                raise InvalidConfigurationError(f"{name} must be positive, got {getattr(self, name)}.")

        non_negative = [
            "ice_thermal_conductivity", "bedrock_thermal_conductivity", "beta_CC",
            "surface_pressure", "hmelt_max", "warm_base_flux_enthalpy_fraction",
            "marginal_thickness_threshold"
        ]
        for name in non_negative:
            if getattr(self, name) < 0:
                raise InvalidConfigurationError(f"{name} must be non-negative, got {getattr(self, name)}.")

        if not 0.0 <= self.liquid_water_fraction_max <= 1.0:
            raise InvalidConfigurationError(
                f"liquid_water_fraction_max must lie in [0, 1], got {self.liquid_water_fraction_max}."
            )

    @classmethod
    def from_dict(cls, parameters: dict):
        """Build a configuration from a flat mapping of parameter names to values."""
        known = {field.name for field in dataclasses.fields(cls)}
        unknown = sorted(set(parameters) - known)

        if unknown:
            raise InvalidConfigurationError(f"Unknown configuration parameters: {', '.join(unknown)}.")

        return cls(**parameters)

    @property
    def warm_base_enthalpy_window(self) -> float:
        """Width of the enthalpy window above the melting point where the basal condition is blended."""
        return self.warm_base_flux_enthalpy_fraction * self.water_latent_heat_fusion
