"""Single delivery attempt: one signed POST, classified into an outcome."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from cargohook.crypto import decrypt_headers
from cargohook.metrics.definitions import WEBHOOK_ATTEMPT_DURATION, WEBHOOK_ATTEMPTS_TOTAL

if TYPE_CHECKING:
    from cargohook.db.models import Webhook

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "cargohook/0.1"

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"
WEBHOOK_ID_HEADER = "X-Webhook-Id"
DELIVERY_ID_HEADER = "X-Webhook-Delivery"

# Subscriber static headers may not replace these
RESERVED_HEADERS = frozenset(
    name.lower()
    for name in (
        "Content-Type",
        SIGNATURE_HEADER,
        TIMESTAMP_HEADER,
        EVENT_HEADER,
        WEBHOOK_ID_HEADER,
        DELIVERY_ID_HEADER,
    )
)


class OutcomeKind(str, Enum):
    """Classification of a single attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class WebhookTarget:
    """Snapshot of the subscriber fields needed to deliver.

    Detached from the ORM so attempts never touch a database session.
    """

    id: str
    url: str
    secret: str
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_model(cls, webhook: "Webhook", encryption_key: str | None = None) -> "WebhookTarget":
        return cls(
            id=str(webhook.id),
            url=webhook.url,
            secret=webhook.secret,
            headers=decrypt_headers(webhook.headers, encryption_key) or {},
        )


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one POST to a subscriber."""

    kind: OutcomeKind
    status_code: int | None = None
    response: Any = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def retryable(self) -> bool:
        return self.kind is OutcomeKind.RETRYABLE


def classify_status(status_code: int) -> OutcomeKind:
    """Map an HTTP status to an outcome.

    2xx succeeds; 4xx other than 429 is permanent; 429, 5xx and anything
    unexpected (1xx, 3xx) are worth retrying.
    """
    if 200 <= status_code < 300:
        return OutcomeKind.SUCCESS
    if 400 <= status_code < 500 and status_code != 429:
        return OutcomeKind.TERMINAL
    return OutcomeKind.RETRYABLE


def capture_response(response: httpx.Response, max_chars: int = 1000) -> Any:
    """Best-effort copy of the response body for diagnostics.

    Parsed JSON when the body is JSON and fits in ``max_chars``, otherwise
    the text truncated to ``max_chars``. None for an empty body.
    """
    try:
        text = response.text
    except (UnicodeDecodeError, LookupError):
        return None
    if not text:
        return None
    if len(text) <= max_chars:
        try:
            return response.json()
        except ValueError:
            pass
    return text[:max_chars]


def build_headers(
    target: WebhookTarget,
    signature: str,
    timestamp_ms: int,
    event: str,
    delivery_id: str | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[str, str]:
    """Assemble request headers for an attempt."""
    headers = {
        "User-Agent": user_agent,
    }
    headers.update(
        {
            name: value
            for name, value in target.headers.items()
            if name.lower() not in RESERVED_HEADERS
        }
    )
    headers.update(
        {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: str(timestamp_ms),
            EVENT_HEADER: event,
            WEBHOOK_ID_HEADER: target.id,
        }
    )
    if delivery_id is not None:
        headers[DELIVERY_ID_HEADER] = delivery_id
    return headers


async def attempt_delivery(
    client: httpx.AsyncClient,
    target: WebhookTarget,
    body: bytes | str,
    signature: str,
    timestamp_ms: int,
    event: str,
    delivery_id: str | None = None,
    timeout: float = 30.0,
    response_max_chars: int = 1000,
    user_agent: str = DEFAULT_USER_AGENT,
) -> AttemptOutcome:
    """POST ``body`` to the subscriber once.

    Args:
        client: Shared HTTP client.
        target: Subscriber snapshot.
        body: Frozen envelope bytes.
        signature: Hex HMAC of ``body``.
        timestamp_ms: Dispatch timestamp (epoch milliseconds).
        event: Event name for the event header.
        delivery_id: Delivery record id, sent for subscriber-side deduplication.
        timeout: Hard limit for the whole request in seconds.
        response_max_chars: Bound on the captured response body.
        user_agent: User-Agent header value.

    Returns:
        AttemptOutcome; transport problems are returned, never raised.
    """
    headers = build_headers(target, signature, timestamp_ms, event, delivery_id, user_agent)
    content = body.encode("utf-8") if isinstance(body, str) else body

    start_time = time.perf_counter()
    try:
        # httpx timeouts apply per network operation; wait_for bounds the total
        response = await asyncio.wait_for(
            client.post(target.url, content=content, headers=headers, timeout=timeout),
            timeout=timeout,
        )
    except (httpx.TimeoutException, asyncio.TimeoutError):
        outcome = AttemptOutcome(OutcomeKind.RETRYABLE, error="timeout")
    except httpx.ConnectError as e:
        outcome = AttemptOutcome(OutcomeKind.RETRYABLE, error=f"Connection error: {e}")
    except httpx.HTTPError as e:
        outcome = AttemptOutcome(OutcomeKind.RETRYABLE, error=f"HTTP error: {e}")
    except Exception as e:
        logger.exception(f"Unexpected error sending webhook to {target.url}")
        outcome = AttemptOutcome(OutcomeKind.TERMINAL, error=f"Unexpected error: {e}")
    else:
        kind = classify_status(response.status_code)
        outcome = AttemptOutcome(
            kind,
            status_code=response.status_code,
            response=capture_response(response, response_max_chars),
            error=None if kind is OutcomeKind.SUCCESS else f"HTTP {response.status_code}",
        )

    WEBHOOK_ATTEMPT_DURATION.observe(time.perf_counter() - start_time)
    WEBHOOK_ATTEMPTS_TOTAL.labels(outcome=outcome.kind.value).inc()

    logger.debug(
        f"Webhook attempt {event} to {target.url}: {outcome.kind.value} "
        f"(status {outcome.status_code})"
    )
    return outcome
