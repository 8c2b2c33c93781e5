"""Exception classes for organoid-spatial."""


class AnalysisError(Exception):
    """Base exception for all analysis errors."""


class SampleLoadError(AnalysisError):
    """Raised when a sample's input files are missing, malformed or inconsistent."""

    def __init__(self, sample_id: str | None = None, reason: str | None = None) -> None:
        if sample_id and reason:
            msg = f"Failed to load sample {sample_id}: {reason}"
        elif sample_id:
            msg = f"Failed to load sample {sample_id}"
        else:
            msg = reason or "Failed to load sample"
        super().__init__(msg)
        self.sample_id = sample_id
        self.reason = reason


class ParameterError(AnalysisError, ValueError):
    """Raised when configuration parameters are invalid for the dataset."""


class StageContractError(AnalysisError):
    """Raised when a pipeline stage is missing inputs or did not produce its outputs."""

    def __init__(self, stage_id: str, missing: list[str], phase: str = "requires") -> None:
        verb = "requires" if phase == "requires" else "did not produce"
        super().__init__(f"Stage {stage_id} {verb}: {', '.join(missing)}")
        self.stage_id = stage_id
        self.missing = list(missing)
        self.phase = phase
