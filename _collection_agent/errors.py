"""
Error types for the collection approval pipeline.

Most failure modes in this pipeline are recovered locally and turned into
data (a validation error, a substituted analyzer report, a REJECT decision).
The exceptions below are the ones that cross a function boundary.
"""


class CollectionPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class MalformedInput(CollectionPipelineError):
    """Input file or payload could not be read as the expected shape."""


class BlockingSecurityFinding(CollectionPipelineError):
    """
    A blocking condition matched during the approval decision.

    Raised by the first matching predicate and caught inside decide(),
    which turns it into a REJECT carrying `condition` and `reason`. It never
    leaves the decision engine.
    """

    def __init__(self, condition: str, reason: str):
        super().__init__(reason)
        self.condition = condition
        self.reason = reason


class AnalyzerUnavailable(CollectionPipelineError):
    """
    A remote analyzer could not produce a usable report (network error,
    timeout, non-200 status, or a response that fails schema checks).

    Caught by FallbackAnalyzer, which substitutes the pattern scanner's
    report exactly once.
    """


class MaterializationRefused(CollectionPipelineError):
    """The submission is not approved, or its author handle is unusable."""


class FilesystemConflict(CollectionPipelineError):
    """A store path exists with an unexpected type (e.g. a file where a
    namespace directory should be)."""


class PackageIntegrityError(CollectionPipelineError):
    """An imported command package failed structure or checksum checks."""
