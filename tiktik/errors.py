"""Errors raised by the live interaction services.

Policy violations carry the user-facing warning as their message so the
gateway can forward ``str(exc)`` straight into a warning frame.
"""

import math


class TikTikError(Exception):
    """Base class for live interaction errors"""


class UnauthenticatedError(TikTikError):
    def __init__(self, message: str = "Please sign in to continue"):
        super().__init__(message)


class StreamNotFoundError(TikTikError):
    def __init__(self, stream_id: str):
        self.stream_id = stream_id
        super().__init__(f"Stream {stream_id} not found")


class NotModeratorError(TikTikError):
    def __init__(self, message: str = "Only the stream owner can do that"):
        super().__init__(message)


class BackendUnavailableError(TikTikError):
    """The backing store failed; the operation was not applied."""


class PolicyViolation(TikTikError):
    """A send was refused by a chat rule. The user may retry later."""


class BannedError(PolicyViolation):
    def __init__(self):
        super().__init__("You are banned from this chat")


class TimedOutError(PolicyViolation):
    def __init__(self, remaining_seconds: float):
        self.remaining_seconds = math.ceil(remaining_seconds)
        super().__init__(f"You are timed out for {self.remaining_seconds} seconds")


class CooldownError(PolicyViolation):
    def __init__(self, remaining_seconds: float):
        self.remaining_seconds = math.ceil(remaining_seconds)
        super().__init__(
            f"Please wait {self.remaining_seconds} seconds before sending another message"
        )


class MessageLengthError(PolicyViolation):
    def __init__(self, max_length: int):
        self.max_length = max_length
        super().__init__(f"Messages must be between 1 and {max_length} characters")


class InvalidSuperChatError(PolicyViolation):
    def __init__(self):
        super().__init__("Super Chat amount must be at least $1")
