from .grids import raster, vertical, vertical_no_bedrock, grid, grid_no_bedrock, config, converter
from .states import build_fields, build_states, uniform_couplers

__all__ = [
    "raster", "vertical", "vertical_no_bedrock", "grid", "grid_no_bedrock", "config", "converter",
    "build_fields", "build_states", "uniform_couplers"
]
