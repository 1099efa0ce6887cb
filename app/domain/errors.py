from __future__ import annotations


class DomainError(Exception):
    """Base for errors rendered as problem details at the API boundary."""

    status_code = 400
    default_title = "Domain Error"

    def __init__(
        self,
        detail: str = "Request could not be processed",
        *,
        title: str | None = None,
        errors: list[dict[str, str]] | None = None,
        type: str | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.title = title or self.default_title
        self.errors = errors or []
        self.type = type


class Unauthorized(DomainError):
    status_code = 401
    default_title = "Unauthorized"


class InvalidInput(DomainError):
    status_code = 400
    default_title = "Invalid Input"


class NotFound(DomainError):
    status_code = 404
    default_title = "Not Found"


class RateLimited(DomainError):
    status_code = 429
    default_title = "Too Many Requests"


class UpstreamFailure(DomainError):
    status_code = 502
    default_title = "Upstream Failure"


class Conflict(DomainError):
    """Duplicate creation; callers resolve it to an idempotent no-op."""

    status_code = 409
    default_title = "Conflict"


class InternalError(DomainError):
    status_code = 500
    default_title = "Internal Server Error"
