"""Error taxonomy for ComfyChat.

Every exception carries a message that is safe to show to the user
directly.  Failures raised during a generation session are terminal for
that session; the coordinator turns them into ordinary conversation
entries so the failure history is persisted alongside successful results.
"""


class ComfyChatError(Exception):
    """Base class for all ComfyChat errors."""

    pass


class ConfigurationMissing(ComfyChatError):
    """No settings row exists yet.

    This is the expected state before first configuration.  Callers should
    surface it as a setup prompt rather than as a failure.
    """

    def __init__(self, message: str = "Configure ComfyUI in Settings to start."):
        super().__init__(message)


class TemplateError(ComfyChatError):
    """The workflow template is malformed or misuses the prompt placeholder."""

    pass


class SubmissionError(ComfyChatError):
    """Job submission failed (non-2xx response or network failure).

    Attributes:
        status: HTTP status code, or ``None`` when the request never
            produced a response.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RetrievalError(ComfyChatError):
    """Artifact download failed after the backend reported success.

    Attributes:
        url: Remote address of the artifact that could not be fetched.
    """

    def __init__(self, message: str, url: str):
        super().__init__(message)
        self.url = url


class ChannelError(ComfyChatError):
    """The push channel failed to connect or dropped."""

    pass
