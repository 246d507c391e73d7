"""
API routes for the payment gateway sandbox.

Engine errors are not caught here; the application's ``SandboxError``
handler renders them with their status code.
"""
from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from sandbox_gateway.core.billing import subscription_payload
from sandbox_gateway.core.session_engine import session_payload
from sandbox_gateway.database.models import FraudReview, WebhookEndpoint
from sandbox_gateway.monitoring.health import HealthCheckError
from sandbox_gateway.utils import isoformat

from .schemas import (
    CancelSubscriptionRequest,
    CheckoutUrlResponse,
    CreateSessionRequest,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    FraudReviewResponse,
    FraudSettingsRequest,
    FraudSettingsResponse,
    HealthCheckResponse,
    ProcessSessionRequest,
    RefundRequest,
    RegisterWebhookRequest,
    ResolveReviewRequest,
    SchedulerRunResponse,
    SessionResponse,
    SubscriptionResponse,
    WebhookEndpointResponse,
    WebhookTestResponse,
)
from .services import Services

logger = structlog.get_logger(__name__)

# Create routers
session_router = APIRouter(prefix="/sessions", tags=["sessions"])
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])
subscription_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
fraud_router = APIRouter(prefix="/fraud", tags=["fraud"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_workspace_id(x_workspace_id: str = Header(..., alias="X-Workspace-Id")) -> str:
    """Workspace identity; authentication happens upstream."""
    if not x_workspace_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Workspace-Id is required")
    return x_workspace_id.strip()


def _session_body(services: Services, session: Any) -> Dict[str, Any]:
    body = session_payload(session, services.sessions.clock())
    body["checkout_url"] = services.sessions.checkout_url(session.id)
    return body


def _endpoint_body(endpoint: WebhookEndpoint) -> Dict[str, Any]:
    return {
        "id": endpoint.id,
        "name": endpoint.name,
        "url": endpoint.url,
        "secret": endpoint.secret,
        "events": list(endpoint.events),
        "is_active": endpoint.is_active,
        "max_retries": endpoint.max_retries,
        "retry_delay_ms": endpoint.retry_delay_ms,
        "backoff_multiplier": endpoint.backoff_multiplier,
        "timeout_seconds": endpoint.timeout_seconds,
        "total_attempts": endpoint.total_attempts,
        "successful_deliveries": endpoint.successful_deliveries,
        "failed_deliveries": endpoint.failed_deliveries,
        "delivery_rate": round(endpoint.delivery_rate(), 2),
        "last_successful_delivery": isoformat(endpoint.last_successful_delivery),
        "last_failed_delivery": isoformat(endpoint.last_failed_delivery),
    }


def _review_body(review: FraudReview) -> Dict[str, Any]:
    return {
        "id": review.id,
        "session_id": review.session_id,
        "score": review.score,
        "level": review.level,
        "factors": list(review.factors or []),
        "status": review.status,
        "reviewer_note": review.reviewer_note,
        "created_at": isoformat(review.created_at),
        "resolved_at": isoformat(review.resolved_at),
    }


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------


@session_router.post(
    "",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a checkout session",
)
async def create_session(
    body: CreateSessionRequest,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = await services.sessions.create(
        workspace_id,
        body.amount,
        body.currency,
        body.description,
        customer_email=body.customer_email,
        customer_name=body.customer_name,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        metadata=body.metadata,
    )
    return _session_body(services, session)


@session_router.post(
    "/payment-links",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a shareable payment link",
)
async def create_payment_link(
    body: CreateSessionRequest,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = await services.sessions.create_payment_link(
        workspace_id,
        body.amount,
        body.currency,
        body.description,
        customer_email=body.customer_email,
        customer_name=body.customer_name,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        metadata=body.metadata,
    )
    return _session_body(services, session)


@session_router.post(
    "/template-preview",
    response_model=SessionResponse,
    summary="Get or create the checkout template preview session",
)
async def template_preview(
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = await services.sessions.get_or_create_template_preview(workspace_id)
    return _session_body(services, session)


@session_router.get("/{session_id}", response_model=SessionResponse, summary="Get a session")
async def get_session(
    session_id: str,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = await services.sessions.get(workspace_id, session_id)
    return _session_body(services, session)


@session_router.get(
    "/{session_id}/checkout-url",
    response_model=CheckoutUrlResponse,
    summary="Get the hosted checkout URL",
)
async def get_checkout_url(
    session_id: str,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = await services.sessions.get(workspace_id, session_id)
    return {"session_id": session.id, "checkout_url": services.sessions.checkout_url(session.id)}


@session_router.post(
    "/{session_id}/process",
    response_model=SessionResponse,
    summary="Process payment for a session",
    description="Runs the fraud gate and the simulated gateway. 202 means a review was opened.",
)
async def process_session(
    session_id: str,
    request: Request,
    body: ProcessSessionRequest | None = None,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = await services.sessions.process(
        workspace_id,
        session_id,
        payment_method=body.payment_method if body else None,
        client_ip=request.client.host if request.client else None,
    )
    return _session_body(services, session)


@session_router.post(
    "/{session_id}/refund",
    response_model=SessionResponse,
    summary="Refund a completed session",
)
async def refund_session(
    session_id: str,
    body: RefundRequest | None = None,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = await services.sessions.refund(
        workspace_id, session_id, amount=body.amount if body else None
    )
    return _session_body(services, session)


@checkout_router.get(
    "/{session_id}",
    response_model=SessionResponse,
    summary="Resolve a hosted checkout link",
)
async def checkout_lookup(
    session_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Read-only lookup by opaque session id; no workspace header needed."""
    session = await services.sessions.get(None, session_id)
    return _session_body(services, session)


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------


@subscription_router.post(
    "",
    response_model=CreateSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a subscription",
)
async def create_subscription(
    body: CreateSubscriptionRequest,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    subscription, first_charge = await services.billing.create(
        workspace_id,
        body.customer_email,
        body.plan_id,
        charge_now=body.charge_now,
        metadata=body.metadata,
    )
    return {
        "subscription": subscription_payload(subscription),
        "first_charge": _session_body(services, first_charge) if first_charge else None,
    }


@subscription_router.get(
    "/{subscription_id}", response_model=SubscriptionResponse, summary="Get a subscription"
)
async def get_subscription(
    subscription_id: str,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return subscription_payload(await services.billing.get(workspace_id, subscription_id))


@subscription_router.post(
    "/{subscription_id}/cancel", response_model=SubscriptionResponse, summary="Cancel a subscription"
)
async def cancel_subscription(
    subscription_id: str,
    body: CancelSubscriptionRequest | None = None,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    subscription = await services.billing.cancel(
        workspace_id, subscription_id, at_period_end=body.at_period_end if body else False
    )
    return subscription_payload(subscription)


@subscription_router.post(
    "/{subscription_id}/pause", response_model=SubscriptionResponse, summary="Pause a subscription"
)
async def pause_subscription(
    subscription_id: str,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return subscription_payload(await services.billing.pause(workspace_id, subscription_id))


@subscription_router.post(
    "/{subscription_id}/resume", response_model=SubscriptionResponse, summary="Resume a subscription"
)
async def resume_subscription(
    subscription_id: str,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return subscription_payload(await services.billing.resume(workspace_id, subscription_id))


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


@webhook_router.post(
    "/endpoints",
    response_model=WebhookEndpointResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint",
)
async def register_webhook(
    body: RegisterWebhookRequest,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    endpoint = await services.dispatcher.register_endpoint(
        workspace_id,
        body.url,
        name=body.name,
        events=body.events,
        secret=body.secret,
        max_retries=body.max_retries,
        retry_delay_ms=body.retry_delay_ms,
        backoff_multiplier=body.backoff_multiplier,
        timeout_seconds=body.timeout_seconds,
    )
    return _endpoint_body(endpoint)


@webhook_router.get(
    "/endpoints",
    response_model=List[WebhookEndpointResponse],
    summary="List webhook endpoints with delivery stats",
)
async def list_webhooks(
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [_endpoint_body(endpoint) for endpoint in await services.dispatcher.list_endpoints(workspace_id)]


@webhook_router.post(
    "/endpoints/{endpoint_id}/test",
    response_model=WebhookTestResponse,
    summary="Send a webhook.test event",
)
async def test_webhook(
    endpoint_id: str,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.dispatcher.send_test(workspace_id, endpoint_id)
    return {
        "success": result.success,
        "status_code": result.status_code,
        "error": result.error,
        "webhook_id": result.webhook_id,
        "duration_seconds": result.duration_seconds,
    }


# ----------------------------------------------------------------------
# Fraud
# ----------------------------------------------------------------------


@fraud_router.get("/settings", response_model=FraudSettingsResponse, summary="Get fraud settings")
async def get_fraud_settings(
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    async with services.session_factory() as db:
        thresholds = await services.fraud_gate.thresholds_for(db, workspace_id)
    return {
        "enabled": thresholds.enabled,
        "block_threshold": thresholds.block,
        "review_threshold": thresholds.review,
        "flag_threshold": thresholds.flag,
    }


@fraud_router.put("/settings", response_model=FraudSettingsResponse, summary="Update fraud settings")
async def update_fraud_settings(
    body: FraudSettingsRequest,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    async with services.session_factory() as db:
        thresholds = await services.fraud_gate.update_thresholds(
            db,
            workspace_id,
            enabled=body.enabled,
            block=body.block_threshold,
            review=body.review_threshold,
            flag=body.flag_threshold,
        )
    return {
        "enabled": thresholds.enabled,
        "block_threshold": thresholds.block,
        "review_threshold": thresholds.review,
        "flag_threshold": thresholds.flag,
    }


@fraud_router.post(
    "/reviews/{review_id}/resolve",
    response_model=FraudReviewResponse,
    summary="Approve or deny a pending fraud review",
)
async def resolve_review(
    review_id: str,
    body: ResolveReviewRequest,
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    review = await services.sessions.resolve_review(
        workspace_id, review_id, approve=body.approve, note=body.note
    )
    return _review_body(review)


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@admin_router.post(
    "/scheduler/run",
    response_model=SchedulerRunResponse,
    summary="Run one renewal scheduler tick now",
)
async def run_scheduler(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.scheduler.run_once()


@admin_router.get("/stats", summary="Session statistics for the workspace")
async def workspace_stats(
    workspace_id: str = Depends(get_workspace_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return await services.sessions.stats(workspace_id)


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        return await services.health.readiness()
    except HealthCheckError as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
