from typing import Optional


class DirShareError(Exception):
    """Base class for failures surfaced to HTTP clients."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class BadRequestError(DirShareError):
    """Raised when a form or multipart submission is malformed."""

    status_code = 400
    default_message = "Bad request"


class InvalidDirectoryError(DirShareError):
    """Raised when the control page names a directory that does not exist."""

    status_code = 400
    default_message = "Directory does not exist"

    def __init__(self, path: str) -> None:
        super().__init__(self.default_message)
        self.path = path


class PathOutsideRootError(FileNotFoundError):
    """Raised when a request path resolves outside the configured root."""

    def __init__(self, request_path: str) -> None:
        super().__init__(f"Path escapes root: {request_path}")
        self.request_path = request_path
