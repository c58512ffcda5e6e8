from __future__ import annotations


class PollError(Exception):
    """Recoverable domain failure reported back to the caller that caused it."""

    code = "poll_error"
    default_message = "Invalid action"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class Forbidden(PollError):
    code = "forbidden"
    default_message = "You are not allowed to do that"


class Unauthenticated(PollError):
    code = "unauthenticated"
    default_message = "User not authenticated"


class PollInProgress(PollError):
    code = "poll_in_progress"
    default_message = "Please wait for current poll to complete"


class PollStillActive(PollError):
    code = "poll_still_active"
    default_message = "Current poll is still active"


class NoActivePoll(PollError):
    code = "no_active_poll"
    default_message = "There is no active poll"


class AlreadyAnswered(PollError):
    code = "already_answered"
    default_message = "You have already answered this poll"


class NotFound(PollError):
    code = "not_found"
    default_message = "Not found"


class SessionAlreadyActive(PollError):
    code = "session_already_active"
    default_message = "Session already active"


class SessionNotActive(PollError):
    code = "session_not_active"
    default_message = "No active session"


class InvalidAnswer(PollError):
    code = "invalid_answer"
    default_message = "That answer does not fit the current poll"
