import asyncio
from typing import List, Optional

import aiohttp
from capi_client.models import APIError, Operation

ERROR_CODE_NOT_AUTHENTICATED = 10002
ERROR_CODE_NOT_AUTHORIZED = 10003
ERROR_CODE_NOT_FOUND = 10010
ERROR_CODE_TOO_MANY_REQUESTS = 10013


class PollingError(Exception):
    """Base class for every outcome that ends a polling call without success"""

    def __init__(
        self,
        message: str,
        identifier: str,
        operation: Optional[Operation] = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.identifier = identifier
        self.operation = operation
        self.attempts = attempts


class OperationFailedError(PollingError):
    """The remote operation itself reached a failure terminal state"""

    @property
    def description(self) -> Optional[str]:
        return self.operation.description if self.operation is not None else None


class PollingTimeoutError(PollingError, TimeoutError):
    """Attempts or deadline ran out while the operation was still non-terminal"""

    def __init__(
        self,
        message: str,
        identifier: str,
        operation: Optional[Operation] = None,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message, identifier, operation, attempts)
        self.last_error = last_error


class PollingCancelledError(PollingError):
    """The caller signalled cancellation before the operation finished"""


class CloudControllerError(Exception):
    """A non-2xx response from the Cloud Controller V3 API"""

    def __init__(self, status: int, errors: Optional[List[APIError]] = None, url: str = ""):
        self.status = status
        self.errors = errors or []
        self.url = url
        super().__init__(self._format())

    def _format(self) -> str:
        if not self.errors:
            summary = "unknown error"
        elif len(self.errors) == 1:
            summary = str(self.errors[0])
        else:
            summary = "multiple errors: " + "; ".join(str(error) for error in self.errors)
        return f"HTTP {self.status} at {self.url}: {summary}"

    @property
    def first_error(self) -> Optional[APIError]:
        return self.errors[0] if self.errors else None

    def _matches(self, code: int, status: int) -> bool:
        if self.first_error is not None and self.first_error.code == code:
            return True
        return self.status == status

    @property
    def is_not_found(self) -> bool:
        return self._matches(ERROR_CODE_NOT_FOUND, 404)

    @property
    def is_unauthorized(self) -> bool:
        return self._matches(ERROR_CODE_NOT_AUTHENTICATED, 401)

    @property
    def is_forbidden(self) -> bool:
        return self._matches(ERROR_CODE_NOT_AUTHORIZED, 403)

    @property
    def retryable(self) -> bool:
        if self.status >= 500 or self.status == 429:
            return True
        return any(
            50000 <= error.code < 60000 or error.code == ERROR_CODE_TOO_MANY_REQUESTS
            for error in self.errors
        )


def default_is_retryable(error: BaseException) -> bool:
    """Decides whether a failed fetch is worth outlasting by waiting"""
    if isinstance(error, CloudControllerError):
        return error.retryable
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status >= 500 or error.status == 429
    if isinstance(
        error,
        (
            aiohttp.ClientConnectionError,
            aiohttp.ClientPayloadError,
            aiohttp.ServerTimeoutError,
            asyncio.TimeoutError,
        ),
    ):
        return True
    return False
