from __future__ import annotations


class VulnzError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(VulnzError, ValueError):
    status_code = 400

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [message])


class AuthError(VulnzError):
    status_code = 401


class ForbiddenError(VulnzError):
    status_code = 403


class NotFoundError(VulnzError):
    status_code = 404


class ConflictError(VulnzError):
    status_code = 409


class RateLimitError(VulnzError):
    status_code = 429
