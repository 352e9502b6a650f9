"""Bounded retries with exponential backoff around the attempt executor."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from cargohook.config import Settings
from cargohook.webhook.executor import (
    DEFAULT_USER_AGENT,
    AttemptOutcome,
    OutcomeKind,
    WebhookTarget,
    attempt_delivery,
)
from cargohook.webhook.signing import sign_payload

logger = logging.getLogger(__name__)

AttemptCallback = Callable[[int, AttemptOutcome], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class DeliveryResult:
    """Final outcome of one scheduler run.

    ``attempts`` counts attempts made in this run only; callers that resume
    an existing record add it to the stored total.
    """

    success: bool
    attempts: int
    status_code: int | None = None
    response: Any = None
    error: str | None = None
    exhausted: bool = False

    @property
    def final_status(self) -> str:
        """Metric label for the run: delivered, failed or exhausted."""
        if self.success:
            return "delivered"
        return "exhausted" if self.exhausted else "failed"


class RetryScheduler:
    """Runs up to ``max_attempts`` sequential attempts for one delivery.

    The delay before attempt ``n`` (n >= 2) is ``initial_delay * 2 ** (n - 2)``,
    so the defaults wait 1s then 2s. The scheduler keeps no state and never
    touches storage; ``on_attempt`` lets the caller persist progress.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        timeout: float = 30.0,
        response_max_chars: int = 1000,
        user_agent: str = DEFAULT_USER_AGENT,
        sleep: SleepFunc = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.timeout = timeout
        self.response_max_chars = response_max_chars
        self.user_agent = user_agent
        self._sleep = sleep

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "RetryScheduler":
        return cls(
            client,
            max_attempts=settings.webhook_max_attempts,
            initial_delay=settings.webhook_retry_initial_delay,
            timeout=settings.webhook_timeout,
            response_max_chars=settings.webhook_response_max_chars,
            user_agent=settings.webhook_user_agent,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-indexed)."""
        if attempt <= 1:
            return 0.0
        return self.initial_delay * (2 ** (attempt - 2))

    async def execute(
        self,
        target: WebhookTarget,
        body: str,
        event: str,
        delivery_id: str | None = None,
        on_attempt: AttemptCallback | None = None,
    ) -> DeliveryResult:
        """Deliver ``body`` to ``target`` until success, a terminal failure or exhaustion.

        Args:
            target: Subscriber snapshot.
            body: Frozen envelope JSON; sent unchanged on every attempt.
            event: Event name.
            delivery_id: Delivery record id for the delivery header and logs.
            on_attempt: Awaited after each attempt with (attempt_number, outcome).

        Returns:
            DeliveryResult carrying the last observed status/response/error.
        """
        signature = sign_payload(body, target.secret)
        timestamp_ms = int(time.time() * 1000)

        outcome: AttemptOutcome | None = None
        attempts = 0

        while attempts < self.max_attempts:
            attempts += 1
            if attempts > 1:
                delay = self.backoff_delay(attempts)
                logger.info(
                    f"Retrying webhook {event} to {target.url} in {delay:.1f}s "
                    f"(attempt {attempts}/{self.max_attempts})"
                )
                await self._sleep(delay)

            outcome = await attempt_delivery(
                self.client,
                target,
                body,
                signature,
                timestamp_ms,
                event,
                delivery_id=delivery_id,
                timeout=self.timeout,
                response_max_chars=self.response_max_chars,
                user_agent=self.user_agent,
            )

            if on_attempt is not None:
                await on_attempt(attempts, outcome)

            if outcome.kind is not OutcomeKind.RETRYABLE:
                break

        assert outcome is not None
        result = DeliveryResult(
            success=outcome.success,
            attempts=attempts,
            status_code=outcome.status_code,
            response=outcome.response,
            error=outcome.error,
            exhausted=outcome.retryable,
        )

        if result.success:
            logger.info(f"Webhook delivered: {event} to {target.url} (attempts {attempts})")
        elif result.exhausted:
            logger.warning(
                f"Webhook {event} to {target.url} exhausted after {attempts} attempts: "
                f"{result.error}"
            )
        else:
            logger.warning(f"Webhook rejected: {event} to {target.url}: {result.error}")

        return result
