"""Exception types raised by the permutation FDR pipeline."""


class PipelineError(Exception):
    """Base class for pipeline failures.

    Every error carries the pipeline stage it was raised from so that
    failures can be reported and tallied per stage.
    """

    stage = "pipeline"

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class InvalidInputError(PipelineError):
    """Malformed or degenerate input data (fatal before any trial runs)."""

    stage = "input"


class FittingFailureError(PipelineError):
    """The differential expression model could not be fitted."""

    stage = "fit"


class EnrichmentToolError(PipelineError):
    """The enrichment tool failed or produced no usable report."""

    stage = "enrichment"


class ParseError(PipelineError):
    """Malformed numeric fields in an intermediate artifact."""

    stage = "parse"


class NoCompletedTrialsError(PipelineError):
    """Every randomised trial failed, so no null distribution exists."""

    stage = "aggregation"
