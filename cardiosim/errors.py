from __future__ import annotations


class CardioSimError(Exception):
    pass


class ConfigurationError(CardioSimError, ValueError):
    pass


class ResumeConflict(CardioSimError):
    pass


class SolverFailure(CardioSimError, RuntimeError):
    pass


class CheckpointIOError(CardioSimError, OSError):
    pass
