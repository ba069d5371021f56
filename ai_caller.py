"""
Retryable Capability Caller: every outbound generative-AI call goes through here.

Each attempt draws a credential from a pool (spreading rate limits across keys),
rate-limit / unavailable failures back off linearly and retry, anything else
fails fast.
"""
import asyncio
import itertools
import json
import logging
import random
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, TypeVar

from openai import APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 503})


class CapabilityError(Exception):
    """Permanent failure of an AI call; never retried."""


class ResponseParseError(CapabilityError):
    """The provider answered, but not with the JSON we asked for."""


class NoCredentialsError(CapabilityError):
    pass


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CapabilityError):
        return False
    if isinstance(exc, (RateLimitError, APITimeoutError, asyncio.TimeoutError)):
        return True
    return isinstance(exc, APIStatusError) and exc.status_code in RETRYABLE_STATUS_CODES


# ============================================================
# Credential pool
# ============================================================
class CredentialPool:
    """API keys plus a selection strategy: ``random`` (uniform) or ``round_robin``."""

    STRATEGIES = ("random", "round_robin")

    def __init__(self, credentials: Sequence[str], strategy: str = "random", rng: Optional[random.Random] = None):
        if strategy not in self.STRATEGIES:
            raise ValueError(f"Unknown credential strategy: {strategy}")
        self.credentials = tuple(credentials)
        self.strategy = strategy
        self._rng = rng or random.Random()
        self._cycle = itertools.cycle(self.credentials)

    def __len__(self) -> int:
        return len(self.credentials)

    def next(self) -> str:
        if not self.credentials:
            raise NoCredentialsError("No API key configured.")
        if self.strategy == "round_robin":
            return next(self._cycle)
        return self._rng.choice(self.credentials)


def default_client_factory(api_key: str) -> AsyncOpenAI:
    # Retries are ours; the SDK's own would multiply the attempt count
    return AsyncOpenAI(api_key=api_key, max_retries=0)


class RetryableCaller:
    def __init__(
        self,
        pool: CredentialPool,
        client_factory: Callable[[str], Any] = default_client_factory,
        retries: int = 3,
        base_delay: float = 1.5,
        timeout: Optional[float] = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.pool = pool
        self.client_factory = client_factory
        self.retries = retries
        self.base_delay = base_delay
        self.timeout = timeout
        self.sleep = sleep
        self._clients: Dict[str, Any] = {}

    def client_for(self, api_key: str) -> Any:
        """One client (and connection pool) per credential, built on first use."""
        client = self._clients.get(api_key)
        if client is None:
            client = self._clients[api_key] = self.client_factory(api_key)
        return client

    async def aclose(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.close()

    async def call(self, operation: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``operation(client)`` with up to ``retries`` sequential attempts."""
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.retries + 1):
            client = self.client_for(self.pool.next())
            try:
                return await asyncio.wait_for(operation(client), timeout=self.timeout)
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                last_error = exc
                logger.warning("AI attempt %d/%d failed: %s", attempt, self.retries, exc.__class__.__name__)
                if attempt < self.retries:
                    await self.sleep(attempt * self.base_delay)
        raise last_error


# ============================================================
# Utility: JSON Extractor
# ------------------------------------------------------------
# Models sometimes wrap JSON in markdown fences or add chatter.
# ============================================================
def parse_json_response(text: Optional[str]) -> Any:
    if not text or not text.strip():
        raise ResponseParseError("Empty AI response.")

    cleaned = text.replace("```json", "").replace("```", "").strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if match:
            try:
                return json.loads(match.group(0))
            except json.JSONDecodeError:
                pass
        raise ResponseParseError("No valid JSON found in AI response.")
