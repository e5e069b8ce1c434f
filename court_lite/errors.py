"""
Shared workflow error types.

Placed in a separate module so the workflow, the store, the sync layer and the
API can all raise and catch the same exception classes.
"""


class CourtError(Exception):
    """Base class for case workflow errors."""


class CaseNotFoundError(CourtError):
    """Raised when a case id (or share code) does not resolve to a case."""


class EvidenceNotFoundError(CaseNotFoundError):
    """Raised when an evidence id is not part of the case."""


class DisputePointNotFoundError(CaseNotFoundError):
    """Raised when a dispute point id is not part of the case."""


class PermissionDeniedError(CourtError):
    """Raised when the acting user is not the designated actor for an action."""


class InvalidTransitionError(CourtError):
    """Raised when an action is not legal from the case's current stage."""


class CaseIntegrityError(CourtError):
    """Raised when a patch would break a data-model invariant."""


class JoinError(CourtError):
    """Raised when a user cannot join a case as defendant."""


class SaveFailedError(CourtError):
    """Raised when a remote write failed; local state was reloaded."""


class AdjudicationInProgressError(CourtError):
    """Raised when a verdict is already being generated for the case."""
