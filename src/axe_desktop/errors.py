from __future__ import annotations


class AxeError(Exception):
    """Base class for errors raised by the conversation service."""


class ConfigurationError(AxeError):
    """No usable provider is configured."""


class RunnerBuildError(AxeError):
    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"failed to create {stage}: {cause}")
        self.stage = stage
        self.cause = cause


class TurnInProgressError(AxeError):
    def __init__(self, session_id: str):
        super().__init__(f"a response is already in progress for session {session_id}")
        self.session_id = session_id


class SessionNotFoundError(AxeError):
    def __init__(self, session_id: str):
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class ProviderError(AxeError):
    """The model API rejected a request with a status the runner reports as an error event."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code} - {message}")
        self.code = code
        self.message = message
