class ConfigurationError(ValueError):
    """Raised when a layer or problem is constructed with an inconsistent configuration."""


class ShapeError(ValueError):
    """Raised at call time when a tensor does not have the length or shape a layer expects."""


class ConvergenceError(RuntimeError):
    """Raised when the Newton iteration of an implicit right-hand side does not converge."""
