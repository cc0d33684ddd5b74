"""Fields of vertical columns distributed over horizontal patches."""

import jax
import jax.numpy as jnp
import equinox as eqx

from utils.distributed_grid import DistributedGrid, HorizontalPatch


class ColumnField(eqx.Module):
    """Values owned by one patch, surrounded by a ghost ring of width one.

    values has shape (xm + 2, ym + 2) for map-plane fields, or
    (xm + 2, ym + 2, n_levels) for fields of vertical columns. Ghost values
    are only valid after halo_exchange(); anything written into the ghost
    ring locally is overwritten by the next exchange.
    """

    patch: HorizontalPatch
    values: jax.Array = eqx.field(converter = jnp.asarray)

    @property
    def owned(self) -> jax.Array:
        """Values at owned columns, without ghosts."""
        return self.values[1:-1, 1:-1]

    def column(self, i: int, j: int) -> jax.Array:
        """Values at global column (i, j); neighbors of owned columns are allowed."""
        li, lj = self.patch.local_index(i, j)
        return self.values[li, lj]

    def __call__(self, i: int, j: int):
        return self.column(i, j)

    def star(self, i: int, j: int) -> jax.Array:
        """Values at the east, west, north, and south neighbors of (i, j)."""
        li, lj = self.patch.local_index(i, j)
        return jnp.stack([
            self.values[li + 1, lj],
            self.values[li - 1, lj],
            self.values[li, lj + 1],
            self.values[li, lj - 1]
        ])

    def neighbors8(self, i: int, j: int) -> jax.Array:
        """Values at all eight horizontal neighbors of (i, j)."""
        li, lj = self.patch.local_index(i, j)
        return jnp.stack([
            self.values[li + 1, lj],
            self.values[li + 1, lj + 1],
            self.values[li, lj + 1],
            self.values[li - 1, lj + 1],
            self.values[li - 1, lj],
            self.values[li - 1, lj - 1],
            self.values[li, lj - 1],
            self.values[li + 1, lj - 1]
        ])

    def with_owned(self, owned_values) -> "ColumnField":
        """Return a new field with the given owned values; ghosts are left stale."""
        return eqx.tree_at(
            lambda t: t.values,
            self,
            self.values.at[1:-1, 1:-1].set(jnp.asarray(owned_values))
        )


def _wrap_pad(global_values: jax.Array, width: int) -> jax.Array:
    """Pad the two horizontal axes periodically."""
    pad = [(width, width), (width, width)] + [(0, 0)] * (global_values.ndim - 2)
    return jnp.pad(global_values, pad, mode = "wrap")


def _slice_patch(padded: jax.Array, patch: HorizontalPatch) -> jax.Array:
    return padded[patch.xs:patch.xs + patch.xm + 2, patch.ys:patch.ys + patch.ym + 2]


def scatter(grid: DistributedGrid, global_values) -> list:
    """Split a global (Mx, My, ...) array into one ColumnField per patch, with valid ghosts."""
    global_values = jnp.asarray(global_values)

    if global_values.shape[:2] != (grid.Mx, grid.My):
        raise ValueError(
            f"Expected an array of shape ({grid.Mx}, {grid.My}, ...), got {global_values.shape}."
        )

    padded = _wrap_pad(global_values, grid.stencil_width)
    return [ColumnField(patch, _slice_patch(padded, patch)) for patch in grid.patches]


def gather(grid: DistributedGrid, fields: list) -> jax.Array:
    """Assemble the owned values of every patch into one global array."""
    trailing = fields[0].values.shape[2:]
    result = jnp.zeros((grid.Mx, grid.My) + trailing, dtype = fields[0].values.dtype)

    for field in fields:
        patch = field.patch
        result = result.at[patch.xs:patch.xs + patch.xm, patch.ys:patch.ys + patch.ym].set(field.owned)

    return result


def halo_exchange(grid: DistributedGrid, fields: list) -> list:
    """Refresh the ghost ring of every patch from its neighbors' owned values.

    Collective over all patches: every patch's field must be passed in.
    """
    if len(fields) != len(grid.patches):
        raise ValueError(
            f"Halo exchange needs one field per patch ({len(grid.patches)}), got {len(fields)}."
        )

    padded = _wrap_pad(gather(grid, fields), grid.stencil_width)

    return [
        eqx.tree_at(lambda t: t.values, field, _slice_patch(padded, field.patch))
        for field in fields
    ]
