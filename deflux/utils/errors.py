"""Error taxonomy for deflux.

Structural errors are fatal for the study being analysed, never for sibling
studies running in the same batch. Per-feature problems are not errors: they
are stored as NaN in the affected row.
"""


class DefluxError(ValueError):
    """Base class for every error raised on purpose by deflux."""

    kind = "DefluxError"


class SchemaMismatchError(DefluxError):
    """A referenced sample ID or column is missing from the matrix or the metadata."""

    kind = "SchemaMismatchError"


class InsufficientReplicatesError(DefluxError):
    """The design cannot be estimated (rank deficient, or no residual df)."""

    kind = "InsufficientReplicatesError"


class AmbiguousAnnotationError(DefluxError):
    """Conflicting organism signals for one feature (strict classification only)."""

    kind = "AmbiguousAnnotationError"


class RowAlignmentError(DefluxError):
    """Tables bound column-wise do not share the same feature rows, in the same order."""

    kind = "RowAlignmentError"


def error_kind(exc: BaseException) -> str:
    return getattr(exc, "kind", type(exc).__name__)


def fmt_ids(ids, cap: int = 20) -> str:
    ids = list(ids)
    shown = ids[:cap] + ([f"... (+{len(ids) - cap} more)"] if len(ids) > cap else [])
    return str(shown)
