from typing import Optional


class AnalysisError(RuntimeError):
    """Raised when chord analysis cannot be completed."""


class InvalidAudioError(AnalysisError):
    """The caller handed over audio or options the engine cannot use."""


class AlgorithmFaultError(AnalysisError):
    """
    an internal stage failed on input that passed validation.

    `stage` names the pipeline stage; the original exception is chained
    as `__cause__`.
    """

    def __init__(self, stage: str, message: Optional[str] = None):
        self.stage = stage
        super().__init__(message or f"internal fault during '{stage}'")


class AnalysisTimeoutError(AnalysisError):
    """The pipeline did not finish before its deadline."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"chord analysis timed out after {timeout:g}s")
