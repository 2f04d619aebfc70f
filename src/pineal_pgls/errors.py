"""Exception types raised by the harmonization and PGLS pipeline.

``PipelineIntegrityError`` and its subclasses are fatal: once sample
identity or species/tree alignment is violated there is no meaningful
partial result. ``PGLSFitError`` is per-gene and never leaves the engine.
"""


class PipelineIntegrityError(Exception):
    """Raised when an input or alignment invariant is violated."""

    pass


class SampleSheetError(PipelineIntegrityError):
    """Raised when the sample sheet or trait table is malformed."""

    pass


class MissingAbundanceFileError(PipelineIntegrityError):
    """Raised when a declared sample has no abundance table on disk."""

    pass


class MappingTableError(PipelineIntegrityError):
    """Raised when a transcript->gene or symbol table cannot be obtained."""

    pass


class OrthologResolutionError(PipelineIntegrityError):
    """Raised when both ortholog backends fail for a species."""

    pass


class EmptyMergeError(PipelineIntegrityError):
    """Raised when the merged matrix carries no reference signal."""

    pass


class TipMismatchError(PipelineIntegrityError):
    """Raised when tree tip labels differ from the expression species set."""

    pass


class TipAlignmentError(PipelineIntegrityError):
    """Raised when an observation table is not in tree tip order."""

    pass


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class PGLSFitError(Exception):
    """Raised when a single gene's regression cannot be fitted."""

    pass
