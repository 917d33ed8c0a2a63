from typing import Optional


class AutoFixError(Exception):
    """Base class for errors raised by the sync core."""


class PersistenceError(AutoFixError):
    pass


class ValidationError(AutoFixError):
    """User-visible rejection of an action; never retried."""


class RemoteRequestError(AutoFixError):
    def __init__(self, action: str, detail: Optional[str] = None) -> None:
        self.action = action
        self.detail = detail
        message = f"{action} failed" if not detail else f"{action} failed: {detail}"
        super().__init__(message)


class MalformedEventError(AutoFixError):
    pass


class StoreNotReadyError(AutoFixError, RuntimeError):
    pass
