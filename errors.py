"""Exception hierarchy shared by the job pipeline, the cache and the web layer."""

from typing import Optional


class StreamerError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StreamerError):
    """Raised when a client supplied a missing or malformed parameter."""

    status_code = 400


class NotFoundError(StreamerError):
    """Raised when a cached artifact or job is unknown."""

    status_code = 404


class RangeNotSatisfiableError(StreamerError):
    """Raised when a byte range starts beyond the end of the artifact."""

    status_code = 416

    def __init__(self, size: int) -> None:
        super().__init__(f"Requested range not satisfiable (size {size}).")
        self.size = size


class CacheDirectoryError(StreamerError):
    """Raised when the cache directory itself cannot be read."""


class UpstreamError(StreamerError):
    """Raised when the Bilibili API fails or refuses a request."""

    status_code = 502


class ResolutionError(StreamerError):
    """Raised when a media source or a fetched file cannot be resolved."""


class ToolError(StreamerError):
    """Base class for failures of an external tool invocation."""

    def __init__(self, tool: str, message: str) -> None:
        super().__init__(message)
        self.tool = tool


class ToolSpawnError(ToolError):
    """Raised when an external tool cannot be started at all."""

    def __init__(self, tool: str, reason: object) -> None:
        super().__init__(tool, f"Failed to start {tool}: {reason}")


class ToolExitError(ToolError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, tool: str, returncode: int, output_tail: Optional[str] = None) -> None:
        message = f"{tool} exited with code {returncode}"
        if output_tail:
            message = f"{message}: {output_tail}"
        super().__init__(tool, message)
        self.returncode = returncode


class ToolTimeoutError(ToolError):
    """Raised when an external tool exceeds the configured time limit."""

    def __init__(self, tool: str, timeout: float) -> None:
        super().__init__(tool, f"{tool} did not finish within {timeout:g} seconds")
        self.timeout = timeout
