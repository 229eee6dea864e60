"""Error and warning kinds raised by the modeling and simulation layers."""


class HybridSimError(Exception):
    """Base class for all hybridsim errors."""


class IncompatibleDimensionsError(HybridSimError, ValueError):
    """Raised when two systems cannot be connected.

    Either the signal dimensions differ or the coordinate frames of the
    connected signals do not match.
    """


class AlgebraicLoopError(HybridSimError, ValueError):
    """Raised when two direct-feedthrough systems are put in a feedback loop."""


class SampleTimeError(HybridSimError, ValueError):
    """Raised when combined systems declare different sample or noise periods."""


class IntegrationError(HybridSimError, RuntimeError):
    """Raised when the simulation cannot advance.

    Parameters
    ----------
    message : str
        Description of the failure
    time : float, optional
        Simulation time at which the failure happened
    trajectory : Trajectory, optional
        Partial trajectory covering [t0, time]
    """

    def __init__(self, message, time=None, trajectory=None):
        super().__init__(message)
        self.time = time
        self.trajectory = trajectory


class ConstraintViolationWarning(UserWarning):
    """Issued when a declared state constraint drifts away from zero."""
