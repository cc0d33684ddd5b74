"""Exceptions raised by the enthalpy and drainage model."""


class EnthalpyModelError(Exception):
    """Base exception for the enthalpy model."""


class InvalidConfigurationError(EnthalpyModelError, ValueError):
    """Parameters or discretizations that the model cannot represent."""


class MissingCollaboratorError(EnthalpyModelError, LookupError):
    """A coupler or required model field is absent."""


class FullyMeltedError(EnthalpyModelError, ValueError):
    """Enthalpy exceeds the enthalpy of fully liquid water at this pressure."""

    def __init__(self, enthalpy, pressure, location = None):
        self.enthalpy = enthalpy
        self.pressure = pressure
        self.location = location

        message = f"Ice has fully melted: E = {enthalpy} J/kg at p = {pressure} Pa"
        if location is not None:
            message += f" at (i, j, k) = {location}"

        super().__init__(message)


class SingularSystemError(EnthalpyModelError, RuntimeError):
    """A column system has a zero pivot and cannot be factored.

    Carries everything needed to write a postmortem dump, so that the caller
    decides whether to report the system before stopping the run.
    """

    def __init__(self, position: int, system, prefix: str = "column", i: int = -1, j: int = -1):
        self.position = position
        self.system = system
        self.prefix = prefix
        self.i = i
        self.j = j
        self.norm1 = system.norm1()
        self.ddratio = system.ddratio()

        super().__init__(
            f"tridiagonal solve for {prefix} system failed at (i, j) = ({i}, {j}) "
            f"with zero pivot position {position} "
            f"(1-norm = {self.norm1:.3e}, diagonal-dominance ratio = {self.ddratio:.5f})"
        )

    def at_column(self, prefix: str, i: int, j: int):
        """Return a copy of this error tagged with a solver prefix and column indices."""
        return SingularSystemError(self.position, self.system, prefix, i, j)
