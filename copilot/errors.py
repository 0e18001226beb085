"""Exceptions raised by the copilot core."""


class CopilotError(Exception):
    """Base for copilot errors."""


class UnknownActionTypeError(CopilotError):
    """A held action carries a payload the executor has no branch for."""

    def __init__(self, action_type: str) -> None:
        self.action_type = action_type
        super().__init__(f"Unknown action type: {action_type}")


class StoreError(CopilotError):
    """A store operation failed for a reason other than a lost conditional write."""
