import asyncio
import inspect
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from utils import logger


class CredentialExchangeFailure(Exception):
    """The token endpoint rejected the exchange or returned an unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


def epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BearerToken:
    value: str
    expires_at_ms: int
    scope: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    def is_valid(self, now_ms: int, margin_ms: int = 0) -> bool:
        return now_ms < self.expires_at_ms - margin_ms

    def as_oauth2_dict(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        """Shape expected by xero_python's ApiClient.set_oauth2_token."""
        now_ms = epoch_ms() if now_ms is None else now_ms
        token = {
            "access_token": self.value,
            "token_type": self.token_type,
            "expires_in": max(0, (self.expires_at_ms - now_ms) // 1000),
            "expires_at": self.expires_at_ms / 1000,
            "scope": (self.scope or "").split(),
        }
        if self.refresh_token:
            token["refresh_token"] = self.refresh_token
        return token


class TokenLifecycleCache:
    """
    Single-slot bearer token cache, refreshed lazily on access.

    A token is handed out while ``now < expires_at_ms - safety_margin_ms``;
    otherwise ``exchange`` is called once (concurrent callers wait for the same
    exchange). When the exchange fails the previous token stays in the slot but
    is not returned, so the next call retries.
    """

    def __init__(
        self,
        exchange: Callable[[], Any],
        safety_margin_ms: int = 0,
        clock: Optional[Callable[[], int]] = None,
        initial: Optional[BearerToken] = None,
        name: str = "token",
    ):
        self._exchange = exchange
        self.safety_margin_ms = safety_margin_ms
        self._clock = clock or epoch_ms
        self._token = initial
        self._lock = asyncio.Lock()
        self.name = name
        self.exchange_count = 0

    @property
    def current(self) -> Optional[BearerToken]:
        return self._token

    def _fresh(self) -> Optional[BearerToken]:
        token = self._token
        if token is not None and token.is_valid(self._clock(), self.safety_margin_ms):
            return token
        return None

    async def get_token(self) -> str:
        return (await self.get_bearer()).value

    async def get_bearer(self) -> BearerToken:
        token = self._fresh()
        if token is not None:
            return token

        async with self._lock:
            # Another caller may have refreshed while we waited on the lock
            token = self._fresh()
            if token is not None:
                return token

            logger.info("Fetching new %s access token", self.name)
            self.exchange_count += 1
            try:
                new_token = await self._run_exchange()
            except Exception as exc:
                if self._token is not None:
                    logger.warning("%s token exchange failed; keeping stale token for retry: %s", self.name, exc)
                else:
                    logger.error("%s token exchange failed: %s", self.name, exc)
                raise
            if not isinstance(new_token, BearerToken):
                raise CredentialExchangeFailure(f"{self.name} exchange returned {type(new_token).__name__}, not a BearerToken")
            self._token = new_token
            logger.info(
                "%s token cached until %s",
                self.name,
                datetime.fromtimestamp(new_token.expires_at_ms / 1000, tz=timezone.utc).isoformat(),
            )
            return new_token

    async def _run_exchange(self) -> BearerToken:
        if inspect.iscoroutinefunction(self._exchange):
            return await self._exchange()
        result = await asyncio.to_thread(self._exchange)
        if inspect.isawaitable(result):
            result = await result
        return result

    def seed(self, token: BearerToken) -> None:
        self._token = token

    def clear(self) -> None:
        logger.info("Clearing %s token cache", self.name)
        self._token = None

    def info(self) -> Dict[str, Any]:
        token = self._token
        now = self._clock()
        return {
            "hasToken": token is not None,
            "expiresAt": (
                datetime.fromtimestamp(token.expires_at_ms / 1000, tz=timezone.utc).isoformat() if token else None
            ),
            "isExpired": token is None or now >= token.expires_at_ms,
        }
