from __future__ import annotations

import logging

from fastapi import Depends, Request
from limits import RateLimitItemPerMinute, RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter

from .config import ApiConfig
from .deps import optional_user
from .errors import RateLimitError
from .models import User
from .utils import log_event

logger = logging.getLogger("vulnz.throttle")

TOO_MANY_REQUESTS = "Too many requests, please try again later."


class RequestThrottle:
    """Per-client fixed window counters for public search and login.

    A limit of 0 turns the matching throttle off.
    """

    def __init__(self, api: ApiConfig) -> None:
        self._limiter = FixedWindowRateLimiter(MemoryStorage())
        self._search = (
            RateLimitItemPerSecond(api.search_limit_per_second) if api.search_limit_per_second > 0 else None
        )
        self._login = (
            RateLimitItemPerMinute(api.login_limit, api.login_window_minutes) if api.login_limit > 0 else None
        )

    def allow_search(self, client: str) -> bool:
        if self._search is None:
            return True
        return self._limiter.hit(self._search, "search", client)

    def allow_login(self, client: str) -> bool:
        if self._login is None:
            return True
        return self._limiter.hit(self._login, "login", client)


def client_address(request: Request) -> str:
    if request.client is None:
        return "unknown"
    return request.client.host


def get_throttle(request: Request) -> RequestThrottle:
    return request.app.state.throttle


def throttle_anonymous_search(
    request: Request,
    user: User | None = Depends(optional_user),
    throttle: RequestThrottle = Depends(get_throttle),
) -> User | None:
    if user is not None:
        return user
    client = client_address(request)
    if not throttle.allow_search(client):
        log_event(logger, logging.WARNING, "search_throttled", client=client)
        raise RateLimitError(TOO_MANY_REQUESTS)
    return None


def throttle_login(request: Request, throttle: RequestThrottle = Depends(get_throttle)) -> None:
    client = client_address(request)
    if not throttle.allow_login(client):
        log_event(logger, logging.WARNING, "login_throttled", client=client)
        raise RateLimitError(TOO_MANY_REQUESTS)
