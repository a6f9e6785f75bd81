"""Exception taxonomy shared by the transport, resolver and orchestrator."""

from __future__ import annotations


class CollectorError(Exception):
    """Base class for errors raised by casedocs."""


class ResolutionAmbiguous(CollectorError):
    """No signal fired and no fallback tier produced a file."""


class IntegrityRejected(CollectorError):
    def __init__(self, reason: str, *, size: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.size = size


class TransportFailure(CollectorError):
    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class FilesystemFailure(CollectorError):
    """Writing an acquired resource into the case directory failed."""


class CaseFailure(CollectorError):
    """A whole case could not be processed (page unreachable, logged out)."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
