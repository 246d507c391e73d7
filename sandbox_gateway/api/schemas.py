"""
Pydantic schemas for API request/response models.

Amounts are integer minor units throughout.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class CreateSessionRequest(BaseModel):
    """Request schema for creating a checkout session or payment link."""

    amount: int = Field(..., description="Amount in minor units")
    currency: str = Field(..., description="ISO currency code (e.g., NGN)")
    description: str = Field(..., description="What the customer is paying for")
    customer_email: Optional[str] = Field(default=None, description="Customer email")
    customer_name: Optional[str] = Field(default=None, description="Customer name")
    success_url: Optional[str] = Field(default=None, description="Redirect after success")
    cancel_url: Optional[str] = Field(default=None, description="Redirect after cancel")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Arbitrary metadata")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 500000,
                    "currency": "NGN",
                    "description": "Annual membership",
                    "customer_email": "ada@example.com",
                    "customer_name": "Ada Obi",
                }
            ]
        }
    }


class SessionResponse(BaseModel):
    """A checkout session as returned by the API."""

    id: str
    workspace_id: str
    amount: int
    currency: str
    description: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    status: str
    purpose: Dict[str, Any]
    metadata: Dict[str, Any]
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_amount: Optional[int] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    created_at: str
    expires_at: str
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    refunded_at: Optional[str] = None
    checkout_url: Optional[str] = None


class CheckoutUrlResponse(BaseModel):
    session_id: str
    checkout_url: str


class ProcessSessionRequest(BaseModel):
    """Request schema for processing a payment."""

    payment_method: Optional[str] = Field(default="card", description="Payment method hint")


class RefundRequest(BaseModel):
    """Request schema for refunding a session."""

    amount: Optional[int] = Field(
        default=None, gt=0, description="Refund amount in minor units (defaults to full amount)"
    )


class CreateSubscriptionRequest(BaseModel):
    customer_email: str = Field(..., description="Customer email")
    plan_id: str = Field(..., description="Plan to subscribe to")
    charge_now: bool = Field(default=False, description="Charge the first period immediately")
    metadata: Optional[Dict[str, Any]] = None


class CancelSubscriptionRequest(BaseModel):
    at_period_end: bool = Field(default=False, description="Defer cancellation to period end")


class SubscriptionResponse(BaseModel):
    id: str
    workspace_id: str
    customer_email: str
    product_id: str
    plan_id: str
    status: str
    start_date: str
    current_period_start: str
    current_period_end: str
    cancel_at_period_end: bool
    canceled_at: Optional[str] = None
    metadata: Dict[str, Any]


class CreateSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse
    first_charge: Optional[SessionResponse] = None


class SchedulerRunResponse(BaseModel):
    ran_at: str
    reminders_sent: int
    renewals: int
    cancellations: int
    sessions_expired: int
    errors: int


class RegisterWebhookRequest(BaseModel):
    """Request schema for registering a webhook endpoint."""

    url: str = Field(..., description="Listener URL")
    name: Optional[str] = Field(default=None, description="Display name")
    events: Optional[List[str]] = Field(default=None, description="Subscribed events")
    secret: Optional[str] = Field(default=None, description="Signing secret (generated if omitted)")
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    retry_delay_ms: Optional[int] = Field(default=None, ge=0)
    backoff_multiplier: Optional[float] = Field(default=None, ge=1.0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0, le=60)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v


class WebhookEndpointResponse(BaseModel):
    id: str
    name: str
    url: str
    secret: str
    events: List[str]
    is_active: bool
    max_retries: int
    retry_delay_ms: int
    backoff_multiplier: float
    timeout_seconds: float
    total_attempts: int
    successful_deliveries: int
    failed_deliveries: int
    delivery_rate: float
    last_successful_delivery: Optional[str] = None
    last_failed_delivery: Optional[str] = None


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    webhook_id: Optional[str] = None
    duration_seconds: float


class FraudSettingsRequest(BaseModel):
    enabled: Optional[bool] = None
    block_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    review_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    flag_threshold: Optional[int] = Field(default=None, ge=0, le=100)


class FraudSettingsResponse(BaseModel):
    enabled: bool
    block_threshold: int
    review_threshold: int
    flag_threshold: int


class ResolveReviewRequest(BaseModel):
    approve: bool = Field(..., description="Approve (True) or deny (False)")
    note: Optional[str] = Field(default=None, description="Reviewer note")


class FraudReviewResponse(BaseModel):
    id: str
    session_id: str
    score: int
    level: str
    factors: List[str]
    status: str
    reviewer_note: Optional[str] = None
    created_at: str
    resolved_at: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
