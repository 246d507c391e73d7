"""
Signed webhook delivery.

Implements:
- Event envelope construction and HMAC-SHA256 signing
- Single-attempt HTTP POST honoring the endpoint timeout
- Atomic per-endpoint delivery statistics
- Fire-and-forget dispatch that records a delivery row per endpoint,
  which the retry queue re-attempts with exponential backoff
"""
import asyncio
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sandbox_gateway.config import Settings
from sandbox_gateway.core.errors import DeliveryError, NotFoundError, ValidationError
from sandbox_gateway.database.models import WebhookDelivery, WebhookEndpoint
from sandbox_gateway.monitoring.metrics import MetricsCollector
from sandbox_gateway.utils import Clock, isoformat, new_id, utc_now

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Sandbox-Signature"
TIMESTAMP_HEADER = "X-Sandbox-Timestamp"
EVENT_HEADER = "X-Sandbox-Event"
WEBHOOK_ID_HEADER = "X-Sandbox-Webhook-Id"
SIGNATURE_PREFIX = "sha256="
CLAIM_LEASE_MARGIN_SECONDS = 30

SUPPORTED_EVENTS = (
    "payment.completed",
    "payment.failed",
    "payment.cancelled",
    "payment.refunded",
    "subscription.created",
    "subscription.updated",
    "subscription.cancelled",
    "invoice.created",
    "invoice.paid",
    "customer.created",
    "customer.updated",
    "webhook.test",
)
DEFAULT_EVENTS = ["payment.completed", "payment.failed"]


def normalize_events(events: Optional[Iterable[str]]) -> List[str]:
    """Keep recognised event names in order, dropping unknowns and duplicates."""
    kept: List[str] = []
    for event in events or []:
        if event in SUPPORTED_EVENTS and event not in kept:
            kept.append(event)
    return kept or list(DEFAULT_EVENTS)


def generate_secret() -> str:
    return "whsec_" + secrets.token_hex(24)


def build_envelope(event: str, data: Dict[str, Any], timestamp: datetime) -> Dict[str, Any]:
    """Build the ``{event, data, timestamp, webhook_id}`` envelope."""
    return {
        "event": event,
        "data": data,
        "timestamp": isoformat(timestamp),
        "webhook_id": new_id("evt"),
    }


def serialize(envelope: Dict[str, Any]) -> bytes:
    """Serialize exactly the bytes that get signed and sent."""
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


def _as_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(payload: bytes | str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``payload`` keyed by ``secret``."""
    return hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()


def verify(payload: bytes | str, provided_signature: str, secret: str) -> bool:
    """
    Check a signature in constant time.

    Accepts the bare hex digest or the ``sha256=`` header form.
    """
    if not provided_signature:
        return False
    if provided_signature.startswith(SIGNATURE_PREFIX):
        provided_signature = provided_signature[len(SIGNATURE_PREFIX):]
    expected = sign(payload, secret)
    return hmac.compare_digest(expected, provided_signature)


@dataclass
class DeliveryResult:
    """Outcome of one POST to one endpoint."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0
    webhook_id: Optional[str] = None


class WebhookDispatcher:
    """
    Delivers signed events to workspace webhook endpoints.

    ``deliver`` makes exactly one attempt. ``dispatch`` runs in the
    background and never raises into the payment flow that triggered it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()
        self._tasks: Set[asyncio.Task] = set()

        logger.info("webhook_dispatcher_initialized")

    # ------------------------------------------------------------------
    # Endpoint management
    # ------------------------------------------------------------------

    async def register_endpoint(
        self,
        workspace_id: str,
        url: str,
        name: Optional[str] = None,
        events: Optional[Iterable[str]] = None,
        secret: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
    ) -> WebhookEndpoint:
        if not url or not url.startswith(("http://", "https://")):
            raise ValidationError("Webhook URL must be an http(s) URL", field="url")

        endpoint = WebhookEndpoint(
            id=new_id("wh"),
            workspace_id=workspace_id,
            name=name or url,
            url=url,
            secret=secret or generate_secret(),
            events=normalize_events(events),
            is_active=True,
            max_retries=self.settings.webhook_max_retries if max_retries is None else max_retries,
            retry_delay_ms=(
                self.settings.webhook_retry_delay_ms if retry_delay_ms is None else retry_delay_ms
            ),
            backoff_multiplier=(
                self.settings.webhook_backoff_multiplier
                if backoff_multiplier is None
                else backoff_multiplier
            ),
            timeout_seconds=timeout_seconds or self.settings.webhook_timeout_seconds,
            created_at=self.clock(),
        )
        async with self.session_factory() as db:
            db.add(endpoint)
            await db.commit()

        logger.info(
            "webhook_endpoint_registered",
            endpoint_id=endpoint.id,
            workspace_id=workspace_id,
            events=endpoint.events,
        )
        return endpoint

    async def list_endpoints(self, workspace_id: str) -> List[WebhookEndpoint]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEndpoint)
                .where(WebhookEndpoint.workspace_id == workspace_id)
                .order_by(WebhookEndpoint.created_at)
            )
            return list(result.scalars().all())

    async def get_endpoint(self, workspace_id: str, endpoint_id: str) -> WebhookEndpoint:
        async with self.session_factory() as db:
            endpoint = await db.get(WebhookEndpoint, endpoint_id)
        if endpoint is None or endpoint.workspace_id != workspace_id:
            raise NotFoundError("webhook_endpoint", endpoint_id)
        return endpoint

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def _post(self, endpoint: WebhookEndpoint, envelope: Dict[str, Any]) -> DeliveryResult:
        body = serialize(envelope)
        signed_at = self.clock()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"{self.settings.app_name}-webhooks",
            SIGNATURE_HEADER: SIGNATURE_PREFIX + sign(body, endpoint.secret),
            TIMESTAMP_HEADER: isoformat(signed_at) or "",
            EVENT_HEADER: envelope["event"],
            WEBHOOK_ID_HEADER: envelope["webhook_id"],
        }

        start = time.perf_counter()
        try:
            try:
                response = await self.http_client.post(
                    endpoint.url,
                    content=body,
                    headers=headers,
                    timeout=endpoint.timeout_seconds,
                )
            except httpx.TimeoutException as e:
                raise DeliveryError(f"Timed out after {endpoint.timeout_seconds}s: {e}")
            except httpx.HTTPError as e:
                raise DeliveryError(f"Transport error: {e}")

            if not 200 <= response.status_code < 300:
                raise DeliveryError(
                    f"Endpoint responded with {response.status_code}",
                    status_code=response.status_code,
                )

            result = DeliveryResult(
                success=True,
                status_code=response.status_code,
                webhook_id=envelope["webhook_id"],
            )

        except DeliveryError as e:
            result = DeliveryResult(
                success=False,
                status_code=e.status_code,
                error=e.message,
                webhook_id=envelope["webhook_id"],
            )
            logger.warning(
                "webhook_delivery_failed",
                endpoint_id=endpoint.id,
                event_name=envelope["event"],
                status_code=e.status_code,
                error=e.message,
            )

        result.duration_seconds = time.perf_counter() - start
        MetricsCollector.record_webhook_attempt(
            envelope["event"], result.success, result.duration_seconds
        )
        await self._record_attempt(endpoint.id, result)
        return result

    async def _record_attempt(self, endpoint_id: str, result: DeliveryResult) -> None:
        """Bump endpoint counters in one UPDATE so concurrent attempts never lose counts."""
        now = self.clock()
        values: Dict[str, Any] = {"total_attempts": WebhookEndpoint.total_attempts + 1}
        if result.success:
            values["successful_deliveries"] = WebhookEndpoint.successful_deliveries + 1
            values["last_successful_delivery"] = now
        else:
            values["failed_deliveries"] = WebhookEndpoint.failed_deliveries + 1
            values["last_failed_delivery"] = now

        async with self.session_factory() as db:
            await db.execute(
                update(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id).values(**values)
            )
            await db.commit()

    async def deliver(
        self, endpoint: WebhookEndpoint, event: str, payload: Dict[str, Any]
    ) -> DeliveryResult:
        """
        Build, sign and POST one event to one endpoint.

        Args:
            endpoint: Target endpoint
            event: Event name
            payload: Event data placed under ``data``

        Returns:
            DeliveryResult: ``success`` iff the endpoint answered 2xx
        """
        envelope = build_envelope(event, payload, self.clock())
        return await self._post(endpoint, envelope)

    async def send_test(self, workspace_id: str, endpoint_id: str) -> DeliveryResult:
        endpoint = await self.get_endpoint(workspace_id, endpoint_id)
        return await self.deliver(
            endpoint,
            "webhook.test",
            {
                "message": "This is a test webhook from the sandbox",
                "endpoint_id": endpoint.id,
            },
        )

    # ------------------------------------------------------------------
    # Fan-out with delivery records
    # ------------------------------------------------------------------

    async def _subscribed_endpoints(self, db: AsyncSession, workspace_id: str, event: str) -> List[WebhookEndpoint]:
        result = await db.execute(
            select(WebhookEndpoint).where(
                WebhookEndpoint.workspace_id == workspace_id,
                WebhookEndpoint.is_active == True,  # noqa: E712
            )
        )
        return [endpoint for endpoint in result.scalars().all() if endpoint.supports_event(event)]

    async def publish(self, workspace_id: str, event: str, data: Dict[str, Any]) -> List[int]:
        """
        Deliver ``event`` to every subscribed endpoint, recording each attempt.

        Returns:
            List[int]: Delivery row ids
        """
        async with self.session_factory() as db:
            endpoints = await self._subscribed_endpoints(db, workspace_id, event)
            if not endpoints:
                return []

            deliveries = []
            for endpoint in endpoints:
                delivery = WebhookDelivery(
                    endpoint_id=endpoint.id,
                    event=event,
                    envelope=build_envelope(event, data, self.clock()),
                    status="pending",
                    attempts=0,
                    created_at=self.clock(),
                )
                delivery.webhook_id = delivery.envelope["webhook_id"]
                db.add(delivery)
                deliveries.append(delivery)
            await db.commit()
            delivery_ids = [delivery.id for delivery in deliveries]

        for delivery_id in delivery_ids:
            await self.attempt_delivery(delivery_id)
        return delivery_ids

    async def attempt_delivery(self, delivery_id: int) -> Optional[DeliveryResult]:
        """
        Make one attempt for a recorded delivery and schedule the next.

        A failed attempt is retried while fewer than ``max_retries``
        re-attempts have been made, after
        ``retry_delay_ms * backoff_multiplier ** (n - 1)`` for re-attempt ``n``.

        The row is claimed (``status='sending'``) before the POST, so
        concurrent callers holding the same snapshot send it at most once.
        Returns None when there is nothing to send or another caller won.
        """
        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None or delivery.status in ("delivered", "exhausted"):
                return None
            endpoint = await db.get(WebhookEndpoint, delivery.endpoint_id)
            if endpoint is None or not endpoint.is_active:
                delivery.status = "exhausted"
                delivery.last_error = "Endpoint removed or inactive"
                delivery.next_attempt_at = None
                await db.commit()
                return None
            envelope = dict(delivery.envelope)
            attempts = delivery.attempts + 1

            # An abandoned claim becomes due again once the lease runs out
            lease_until = self.clock() + timedelta(
                seconds=endpoint.timeout_seconds + CLAIM_LEASE_MARGIN_SECONDS
            )
            claimed = await db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status == delivery.status,
                    WebhookDelivery.attempts == delivery.attempts,
                )
                .values(status="sending", next_attempt_at=lease_until)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                logger.info("webhook_delivery_already_claimed", delivery_id=delivery_id)
                return None
            await db.commit()

        # No transaction is held across the network call
        result = await self._post(endpoint, envelope)

        now = self.clock()
        values: Dict[str, Any] = {
            "attempts": attempts,
            "last_status_code": result.status_code,
        }
        if result.success:
            values.update(status="delivered", delivered_at=now, next_attempt_at=None, last_error=None)
        else:
            values["last_error"] = result.error
            retries_used = attempts - 1
            if retries_used < endpoint.max_retries:
                values.update(
                    status="failed",
                    next_attempt_at=now
                    + timedelta(seconds=endpoint.retry_delay_seconds(retries_used + 1)),
                )
            else:
                values.update(status="exhausted", next_attempt_at=None)
                logger.warning(
                    "webhook_delivery_exhausted",
                    delivery_id=delivery_id,
                    endpoint_id=endpoint.id,
                    attempts=attempts,
                )

        async with self.session_factory() as db:
            await db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status == "sending",
                    WebhookDelivery.attempts == attempts - 1,
                )
                .values(**values)
            )
            await db.commit()

        return result

    def dispatch(self, workspace_id: str, event: str, data: Dict[str, Any]) -> asyncio.Task:
        """Publish in the background; the caller never waits on or sees delivery errors."""
        task = asyncio.create_task(self._publish_safely(workspace_id, event, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _publish_safely(self, workspace_id: str, event: str, data: Dict[str, Any]) -> None:
        try:
            await self.publish(workspace_id, event, data)
        except Exception as e:
            logger.error(
                "webhook_dispatch_error",
                workspace_id=workspace_id,
                event_name=event,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for in-flight background dispatches."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_client:
            await self.http_client.aclose()
