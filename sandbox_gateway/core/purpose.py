"""
Why a checkout session exists.

Stored on the session row as JSON and parsed back into one of the
variants below, so callers never poke at ad-hoc metadata keys.
"""
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Purpose(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class AdhocPurpose(_Purpose):
    """Customer-initiated checkout or shareable payment link."""

    kind: Literal["adhoc"] = "adhoc"
    source: str | None = None


class SubscriptionChargePurpose(_Purpose):
    """A charge raised on behalf of a subscription (first payment or renewal)."""

    kind: Literal["subscriptionCharge"] = "subscriptionCharge"
    subscription_id: str = Field(alias="subscriptionId")
    plan_id: str = Field(alias="planId")
    product_id: str | None = Field(default=None, alias="productId")


class TemplatePreviewPurpose(_Purpose):
    """Throwaway session used to preview a workspace's checkout template."""

    kind: Literal["templatePreview"] = "templatePreview"


SessionPurpose = Annotated[
    Union[AdhocPurpose, SubscriptionChargePurpose, TemplatePreviewPurpose],
    Field(discriminator="kind"),
]

_adapter: TypeAdapter = TypeAdapter(SessionPurpose)


def parse_purpose(raw: Dict[str, Any] | None) -> "AdhocPurpose | SubscriptionChargePurpose | TemplatePreviewPurpose":
    """Parse a stored purpose; rows without one are treated as ad-hoc."""
    if not raw:
        return AdhocPurpose()
    return _adapter.validate_python(raw)
