"""Fields read and written by one enthalpy and drainage step, on one patch."""

import equinox as eqx

from utils.errors import MissingCollaboratorError
from utils.column_field import ColumnField, scatter, gather


class ModelState(eqx.Module):
    """Every field the step needs, as ColumnFields on one horizontal patch.

    Three-dimensional fields live on the storage levels: enthalpy, u, v, w and
    strain_heating on the ice levels, bedrock_temperature on the bedrock levels.
    """

    ice_thickness: ColumnField # m
    enthalpy: ColumnField # J kg^-1
    bedrock_temperature: ColumnField # K
    u: ColumnField # m s^-1
    v: ColumnField # m s^-1
    w: ColumnField # m s^-1
    strain_heating: ColumnField # W m^-3
    basal_frictional_heating: ColumnField # W m^-2
    geothermal_flux: ColumnField # W m^-2
    floating_mask: ColumnField
    stored_basal_water: ColumnField # m
    basal_melt_rate: ColumnField # m s^-1

    field_names = (
        "ice_thickness", "enthalpy", "bedrock_temperature", "u", "v", "w",
        "strain_heating", "basal_frictional_heating", "geothermal_flux",
        "floating_mask", "stored_basal_water", "basal_melt_rate"
    )

    @property
    def patch(self):
        return self.ice_thickness.patch

    def check_complete(self):
        """Raise MissingCollaboratorError if any field is absent."""
        missing = [name for name in self.field_names if getattr(self, name) is None]

        if missing:
            raise MissingCollaboratorError(f"Model state is missing fields: {', '.join(missing)}.")

    @classmethod
    def scatter(cls, grid, **global_arrays) -> list:
        """Split global (Mx, My, ...) arrays into one ModelState per patch.

        Fields that are not given, or given as None, are left as None.
        """
        unknown = sorted(set(global_arrays) - set(cls.field_names))
        if unknown:
            raise ValueError(f"Unknown model state fields: {', '.join(unknown)}.")

        per_patch = {}
        for name in cls.field_names:
            values = global_arrays.get(name)
            per_patch[name] = [None] * len(grid.patches) if values is None else scatter(grid, values)

        return [
            cls(**{name: per_patch[name][rank] for name in cls.field_names})
            for rank in range(len(grid.patches))
        ]

    @staticmethod
    def gather(grid, states: list, name: str):
        """Assemble one field from every patch into a global (Mx, My, ...) array."""
        return gather(grid, [getattr(state, name) for state in states])
