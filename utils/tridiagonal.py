"""Tridiagonal linear systems for vertical columns, solved with lineax."""

import os
import logging
import numpy as np
import jax
import jax.numpy as jnp
import equinox as eqx
import lineax as lx

from jax import config
config.update("jax_enable_x64", True)

from utils.errors import SingularSystemError

logger = logging.getLogger(__name__)


class TridiagonalSystem(eqx.Module):
    """A tridiagonal system A x = b stored as three diagonals and a right-hand side.

    lower[k] couples row k + 1 to unknown k; upper[k] couples row k to unknown k + 1.
    """

    lower: jax.Array = eqx.field(converter = jnp.asarray)
    diagonal: jax.Array = eqx.field(converter = jnp.asarray)
    upper: jax.Array = eqx.field(converter = jnp.asarray)
    rhs: jax.Array = eqx.field(converter = jnp.asarray)

    pivot_tolerance: float = 1e-12

    @property
    def size(self) -> int:
        return self.diagonal.shape[0]

    def pivots(self) -> jax.Array:
        """Calculate the pivots of Gaussian elimination without row exchanges."""
        def eliminate(previous, coeffs):
            lower, diagonal, upper = coeffs
            pivot = diagonal - lower * upper / previous
            return pivot, pivot

        _, rest = jax.lax.scan(
            eliminate,
            self.diagonal[0],
            (self.lower, self.diagonal[1:], self.upper)
        )

        return jnp.concatenate([self.diagonal[:1], rest])

    def zero_pivot_position(self) -> int:
        """Return the first row with a (near) zero or non-finite pivot, or -1 if there is none.

        A non-finite right-hand side counts as a failed row too.
        """
        pivots = self.pivots()
        scale = jnp.maximum(self.row_scale(), 1e-300)
        bad = (~jnp.isfinite(pivots)) | (jnp.abs(pivots) <= self.pivot_tolerance * scale)
        bad = bad | (~jnp.isfinite(self.rhs))

        if bool(jnp.any(bad)):
            return int(jnp.argmax(bad))

        return -1

    def row_scale(self) -> jax.Array:
        """Largest absolute coefficient in each row."""
        lower = jnp.concatenate([jnp.zeros(1), jnp.abs(self.lower)])
        upper = jnp.concatenate([jnp.abs(self.upper), jnp.zeros(1)])
        return jnp.maximum(jnp.maximum(lower, upper), jnp.abs(self.diagonal))

    def solve(self) -> jax.Array:
        """Solve the system, raising SingularSystemError if it cannot be factored."""
        position = self.zero_pivot_position()

        if position >= 0:
            raise SingularSystemError(position, self)

        if self.size == 1:
            return self.rhs / self.diagonal

        operator = lx.TridiagonalLinearOperator(self.diagonal, self.lower, self.upper)
        solution = lx.linear_solve(operator, self.rhs, solver = lx.Tridiagonal())

        return solution.value

    def to_dense(self) -> jax.Array:
        """Return the full matrix."""
        return (
            jnp.diag(self.diagonal)
            + jnp.diag(self.lower, k = -1)
            + jnp.diag(self.upper, k = 1)
        )

    def norm1(self) -> float:
        """Maximum absolute column sum of the matrix."""
        lower = jnp.concatenate([jnp.abs(self.lower), jnp.zeros(1)])
        upper = jnp.concatenate([jnp.zeros(1), jnp.abs(self.upper)])
        return float(jnp.max(jnp.abs(self.diagonal) + lower + upper))

    def ddratio(self) -> float:
        """Diagonal-dominance ratio: max over rows of |off-diagonals| / |diagonal|.

        Less than one means strictly diagonally dominant. Returns -1 if some
        diagonal entry is negligible relative to the 1-norm.
        """
        scale = self.norm1()
        diagonal = jnp.abs(self.diagonal)

        if scale == 0.0 or bool(jnp.any(diagonal / scale < 1e-12)):
            return -1.0

        lower = jnp.concatenate([jnp.zeros(1), jnp.abs(self.lower)])
        upper = jnp.concatenate([jnp.abs(self.upper), jnp.zeros(1)])
        return float(jnp.max((lower + upper) / diagonal))


def _format_matlab(name: str, array) -> str:
    array = np.atleast_1d(np.asarray(array))

    if array.ndim == 1:
        body = " ".join(f"{value:.12e}" for value in array)
        return f"{name} = [{body}]';\n"

    rows = ";\n".join(" ".join(f"{value:.12e}" for value in row) for row in array)
    return f"{name} = [\n{rows}];\n"


def write_system(path: str, system: TridiagonalSystem, header: str, solution = None):
    """Write a tridiagonal system (and optionally its solution) as MATLAB text."""
    with open(path, "w") as f:
        f.write("% " + header + "\n")
        f.write(
            f"% 1-norm = {system.norm1():.3e}  and  "
            f"diagonal-dominance ratio = {system.ddratio():.5f}\n"
        )
        f.write(_format_matlab("system_A", system.to_dense()))
        f.write(_format_matlab("system_rhs", system.rhs))

        if solution is not None:
            f.write(_format_matlab("solution_x", solution))

    return path


def _unique_path(path: str) -> str:
    root, ext = os.path.splitext(path)
    candidate, n = path, 1

    while os.path.exists(candidate):
        candidate = f"{root}_{n}{ext}"
        n += 1

    return candidate


def report_column(system: TridiagonalSystem, solution, prefix: str, i: int, j: int, directory: str = ".") -> str:
    """View a column system and its solution in a file named after the column."""
    path = _unique_path(os.path.join(directory, f"{prefix}_i{i}_j{j}.m"))
    write_system(
        path,
        system,
        f"{prefix} system and solution at (i,j)=({i},{j})",
        solution
    )
    logger.info("Wrote %s system at (%d, %d) to %s", prefix, i, j, path)
    return path


def report_column_solve_error(error: SingularSystemError, directory: str = ".") -> str:
    """Write the system that failed to factor, for postmortem analysis."""
    path = _unique_path(
        os.path.join(
            directory,
            f"{error.prefix}_i{error.i}_j{error.j}_zeropivot{error.position}.m"
        )
    )
    write_system(
        path,
        error.system,
        f"{error.prefix} system at (i,j)=({error.i},{error.j}) with zero pivot position {error.position}"
    )
    logger.error("Singular %s system at (%d, %d); viewing system to %s", error.prefix, error.i, error.j, path)
    return path
