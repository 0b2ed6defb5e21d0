"""Custom exceptions for split-sync."""


class SplitSyncError(Exception):
    """Base exception for all split-sync errors."""

    pass


class ConfigurationError(SplitSyncError):
    """Raised when configuration is invalid or missing."""

    pass


# ============================================================================
# Validation errors (rejected before anything is persisted)
# ============================================================================


class ValidationError(SplitSyncError):
    """Raised when a request has a bad description, amount or participant shape."""

    pass


class InvalidAmountError(ValidationError):
    """Raised when an amount is missing, non-positive or over-precise."""

    pass


class InvalidIdentifierError(ValidationError):
    """Raised when a user or group reference cannot be normalized to an id."""

    pass


class DuplicateParticipantError(ValidationError):
    """Raised when the same user appears twice in a direct bill."""

    def __init__(self, user_ids: list[str], message: str | None = None):
        self.user_ids = user_ids
        super().__init__(
            message
            or f"Duplicate participants are not allowed: {', '.join(user_ids)}"
        )


class AmountMismatchError(ValidationError):
    """Raised when participant amounts do not add up to the bill total."""

    pass


class UnknownParticipantError(ValidationError):
    """Raised when one or more mentioned users cannot be resolved."""

    def __init__(self, mentions: list[str], message: str | None = None):
        self.mentions = mentions
        super().__init__(
            message or f"Unknown participant(s): {', '.join(mentions)}"
        )


class SelfOnlySplitError(ValidationError):
    """Raised when the creator would be the only participant."""

    def __init__(self, message: str | None = None):
        super().__init__(message or "Cannot create split bill with only yourself")


# ============================================================================
# Authorization errors
# ============================================================================


class AuthorizationError(SplitSyncError):
    """Base class for errors where the actor may not perform the operation."""

    pass


class NotAParticipantError(AuthorizationError):
    """Raised when the actor is not a participant in the split bill."""

    def __init__(self, split_bill_id: str, user_id: str):
        self.split_bill_id = split_bill_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} is not a participant in split bill {split_bill_id}"
        )


class CannotRejectOwnBillError(AuthorizationError):
    """Raised when the creator tries to reject their own split bill."""

    def __init__(self, split_bill_id: str):
        self.split_bill_id = split_bill_id
        super().__init__("Cannot reject your own bill")


class NotAGroupMemberError(AuthorizationError):
    """Raised when a user is not an active member of the bill's group."""

    def __init__(self, group_id: str, user_ids: list[str]):
        self.group_id = group_id
        self.user_ids = user_ids
        super().__init__(
            f"Not active member(s) of group {group_id}: {', '.join(user_ids)}"
        )


class AccessDeniedError(AuthorizationError):
    """Raised when the actor may not view a split bill."""

    pass


# ============================================================================
# Not-found errors
# ============================================================================


class NotFoundError(SplitSyncError):
    """Base class for lookups of unknown records."""

    pass


class SplitBillNotFoundError(NotFoundError):
    """Raised when a split bill id does not exist."""

    def __init__(self, split_bill_id: str):
        self.split_bill_id = split_bill_id
        super().__init__(f"Split bill {split_bill_id} not found")


class GroupNotFoundError(NotFoundError):
    """Raised when a group id does not exist."""

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"Group {group_id} not found")


class NotASplitCommandError(SplitSyncError):
    """Raised when chat text does not start with the @split trigger."""

    pass


# ============================================================================
# Collaborator errors (logged at the service boundary, never surfaced)
# ============================================================================


class APIError(SplitSyncError):
    """Base class for collaborator API errors."""

    pass


class RealtimeGatewayError(APIError):
    """Raised when the realtime gateway rejects or drops an event."""

    pass


class NotificationServiceError(APIError):
    """Raised when the notification/reminder service request fails."""

    pass


class ChatServiceError(APIError):
    """Raised when posting a structured chat message fails."""

    pass
