from components.enthalpy_config import EnthalpyConfig
from components.enthalpy_converter import EnthalpyConverter
from components.column_systems import (
    ColumnState, IceEnthalpySystem, BedrockSystem, CombinedSystem, horizontal_source
)
from components.drainage import drain_excess_liquid, drain_column
from components.model_state import ModelState
from components.couplers import GivenAtmosphere, GivenOcean
from components.enthalpy_step import (
    BasalState, classify_basal_state, enthalpy_cts_column, is_marginal, basal_boundary_row,
    EnthalpyStepDiagnostics, EnthalpyDrainageStep, run_enthalpy_step
)
from components import enthalpy_fields

__all__ = [
    "EnthalpyConfig", "EnthalpyConverter", "ColumnState", "IceEnthalpySystem", "BedrockSystem",
    "CombinedSystem", "horizontal_source", "drain_excess_liquid", "drain_column", "ModelState",
    "GivenAtmosphere", "GivenOcean", "BasalState", "classify_basal_state", "enthalpy_cts_column",
    "is_marginal", "basal_boundary_row", "EnthalpyStepDiagnostics", "EnthalpyDrainageStep",
    "run_enthalpy_step", "enthalpy_fields"
]
