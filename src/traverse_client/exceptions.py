"""Error taxonomy for server provisioning, session lifecycle and persistence."""

from __future__ import annotations


class TraverseError(RuntimeError):
    """Base class for every failure raised by the client runtime."""


class BinaryNotFound(TraverseError):
    pass


class DownloadError(TraverseError):
    """A release lookup, transfer or install did not produce a binary."""

    def __init__(
        self,
        message: str,
        *,
        platform_tag: str | None = None,
        status: int | None = None,
        url: str | None = None,
        detail: str | None = None,
    ) -> None:
        parts = [message]
        if platform_tag:
            parts.append(f"platform={platform_tag}")
        if status is not None:
            parts.append(f"status={status}")
        if url:
            parts.append(f"url={url}")
        if detail:
            parts.append(detail)
        super().__init__(" | ".join(parts))
        self.platform_tag = platform_tag
        self.status = status
        self.url = url
        self.detail = detail


class UnsupportedPlatform(DownloadError):
    pass


class DownloadFailed(DownloadError):
    pass


class DownloadCancelled(DownloadFailed):
    pass


class DownloadInProgress(DownloadError):
    pass


class InstallFailed(DownloadError):
    pass


class StartError(TraverseError):
    """The server process could not be spawned or never completed its handshake."""

    def __init__(self, message: str, *, stderr_tail: str = "") -> None:
        detail = stderr_tail.strip()
        super().__init__(f"{message}: {detail}" if detail else message)
        self.stderr_tail = detail


class ProtocolError(TraverseError):
    pass


class ServerError(ProtocolError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, method: str, error: object) -> None:
        code = None
        message = str(error)
        if isinstance(error, dict):
            code = error.get("code")
            message = str(error.get("message", message))
        super().__init__(f"{method} failed (code {code}): {message}")
        self.method = method
        self.code = code
        self.error = error


class RequestTimeoutError(TraverseError, TimeoutError):
    pass


class SessionClosed(TraverseError):
    pass


class RequestCancelled(SessionClosed):
    pass


class PersistError(TraverseError):
    pass
