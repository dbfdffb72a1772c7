"""Exception taxonomy for Slacker services."""


class SlackerError(Exception):
    """Base exception for slacker operations."""
    pass


class ValidationError(SlackerError):
    """Bad input to a command or action; nothing was changed."""
    pass


class InvalidTransitionError(ValidationError):
    """Lifecycle move not allowed from the item's current state."""
    pass


class ActionItemNotFoundError(SlackerError):
    """Action item does not exist."""
    pass


class UserNotFoundError(SlackerError):
    """User does not exist."""
    pass


class IdentityUnresolvedError(SlackerError):
    """No identifier (or no e-mail, when linking) could be resolved."""
    pass


class IdentityMergeError(SlackerError):
    """Duplicate users cannot be reconciled automatically."""
    pass


def failure_message(action: str, item_id, reason: str) -> str:
    """Short user-facing message naming the action and the item."""
    return f":x: Failed to {action} action item (id={item_id}): {reason}"
