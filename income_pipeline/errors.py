"""Exception hierarchy for the cleaning pipeline."""


class CleaningError(Exception):
    """Base class for pipeline failures."""


class StructuralError(CleaningError):
    """Raised when the snapshot table is missing columns it must have."""


class RuleApplicationError(CleaningError):
    """Raised when a normalization rule cannot evaluate a record."""

    def __init__(self, rule: str, message: str, row_id=None):
        self.rule = rule
        self.row_id = row_id
        super().__init__(f"{rule}: {message} (row_id={row_id})")


class ConcurrencyConflict(CleaningError):
    """Raised when a build is requested while another one is running."""


class TransactionFailure(CleaningError):
    """Raised when a build or an append fails and was rolled back."""


class LoaderError(CleaningError):
    """Raised when an input file cannot be read."""
