from utils.errors import (
    EnthalpyModelError, InvalidConfigurationError, MissingCollaboratorError,
    FullyMeltedError, SingularSystemError
)
from utils.distributed_grid import (
    DistributedGrid, HorizontalPatch, VerticalLevels, FineVerticalGrid,
    create_patch_decomposition, compute_vertical_levels, compute_fine_vertical_grid,
    freeze_grid
)
from utils.column_field import ColumnField, scatter, gather, halo_exchange
from utils.tridiagonal import TridiagonalSystem, report_column, report_column_solve_error

__all__ = [
    'EnthalpyModelError', 'InvalidConfigurationError', 'MissingCollaboratorError',
    'FullyMeltedError', 'SingularSystemError',
    'DistributedGrid', 'HorizontalPatch', 'VerticalLevels', 'FineVerticalGrid',
    'create_patch_decomposition', 'compute_vertical_levels', 'compute_fine_vertical_grid',
    'freeze_grid', 'ColumnField', 'scatter', 'gather', 'halo_exchange',
    'TridiagonalSystem', 'report_column', 'report_column_solve_error'
]
