class TutorError(Exception):
    """Base class for failures that are local to one tick or one turn."""


class CaptureError(TutorError):
    """The work surface could not be rendered to an image."""


class ServiceError(TutorError):
    """The reasoning service failed (network, API or unparseable reply)."""


class CapabilityUnavailable(TutorError):
    """A speech capability is missing on this runtime or not configured."""

    def __init__(self, capability: str, detail: str = ""):
        self.capability = capability
        self.detail = detail
        message = f"{capability} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class NoSpeechTimeout(TutorError):
    """The recogniser heard nothing. Benign: listening is simply restarted."""
