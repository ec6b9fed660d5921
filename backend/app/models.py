from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ClickEventType(str, Enum):
    whatsapp_click = "whatsapp_click"
    link_click = "link_click"
    page_view = "page_view"


class CorrelationMethod(str, Enum):
    explicit_token = "explicit_token"
    temporal_single = "temporal_single"
    temporal_nearest = "temporal_nearest"


class WebhookProcessingStatus(str, Enum):
    received = "received"
    processed = "processed"
    failed = "failed"


class TrackingOption(str, Enum):
    automatic = "automatic"
    manual = "manual"


class UtmData(BaseModel):
    utm_source: Optional[str] = Field(default=None, max_length=250)
    utm_medium: Optional[str] = Field(default=None, max_length=250)
    utm_campaign: Optional[str] = Field(default=None, max_length=250)
    utm_content: Optional[str] = Field(default=None, max_length=250)
    utm_term: Optional[str] = Field(default=None, max_length=250)
    landing_page: Optional[str] = Field(default=None, max_length=2000)


class ClickTrackRequest(BaseModel):
    tenant_id: Optional[int] = Field(default=None, ge=1)
    tracking_id: Optional[str] = Field(default=None, max_length=100)
    utm_data: UtmData = Field(default_factory=UtmData)
    page_url: Optional[str] = Field(default=None, max_length=2000)
    referrer: Optional[str] = Field(default=None, max_length=2000)
    user_agent: Optional[str] = Field(default=None, max_length=2000)
    session_id: Optional[str] = Field(default=None, max_length=120)
    event_type: ClickEventType = ClickEventType.whatsapp_click
    phone: Optional[str] = Field(default=None, max_length=20)
    message: Optional[str] = Field(default=None, max_length=1000)
    session_duration: Optional[int] = Field(default=None, ge=0)
    pages_viewed: Optional[int] = Field(default=None, ge=1)

    @field_validator("tracking_id", "session_id")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ClickTrackResponse(BaseModel):
    tracking_id: str
    click_id: str
    deduplicated: bool


class TrackingLinkCreateRequest(BaseModel):
    base_url: str = Field(min_length=8, max_length=2000)
    campaign_name: Optional[str] = Field(default=None, max_length=255)
    owner_user_id: Optional[str] = Field(default=None, max_length=120)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) url")
        return value


class TrackingLinkResponse(BaseModel):
    tracking_id: str
    campaign_name: str
    base_url: str
    destination_url: str
    tracked_url: str
    owner_user_id: Optional[str]
    clicks_count: int
    created_at_utc: datetime


class InboundMessage(BaseModel):
    tenant_id: int
    phone_number: str
    content: str
    received_at_utc: datetime
    message_id: Optional[str] = None


class WebhookEventRequest(BaseModel):
    event_id: str = Field(min_length=4, max_length=120)
    tenant_id: Optional[int] = Field(default=None, ge=1)
    phone: Optional[str] = None
    event_type: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class WebhookEventResponse(BaseModel):
    status: str
    attempts: Optional[int] = None
    detail: Optional[str] = None


class ConversionCreateRequest(BaseModel):
    tenant_id: Optional[int] = Field(default=None, ge=1)
    tracking_id: str = Field(min_length=1, max_length=100)
    conversion_type: str = Field(default="purchase", min_length=2, max_length=50)
    conversion_value: Optional[float] = Field(default=None, ge=0)
    order_id: Optional[str] = Field(default=None, max_length=120)
    product_ids: list[str] = Field(default_factory=list)
    customer_email: Optional[str] = Field(default=None, max_length=254)
    customer_phone: Optional[str] = Field(default=None, max_length=20)


class ConversionCreateResponse(BaseModel):
    conversion_id: str
    tracking_id: str
    link_resolved: bool
    deduplicated: bool
    click_id: Optional[str]


class PhoneAssociationRequest(BaseModel):
    tenant_id: Optional[int] = Field(default=None, ge=1)
    phone: str = Field(max_length=20)
    tracking_id: Optional[str] = Field(default=None, max_length=100)
    session_id: Optional[str] = Field(default=None, max_length=120)

    @field_validator("tracking_id", "session_id")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        if sum(ch.isdigit() for ch in value) < 8:
            raise ValueError("phone must contain at least 8 digits")
        return value

    @model_validator(mode="after")
    def validate_click_reference(self) -> "PhoneAssociationRequest":
        if not self.tracking_id and not self.session_id:
            raise ValueError("tracking_id or session_id is required")
        return self


class PhoneAssociationResponse(BaseModel):
    phone: str
    click_ids: list[str]


class IntegrationSetupRequest(BaseModel):
    site_url: str = Field(min_length=8, max_length=2000)
    tracking_option: TrackingOption = TrackingOption.automatic
    conversion_types: list[str] = Field(default_factory=list)

    @field_validator("site_url")
    @classmethod
    def validate_site_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("site_url must be an http(s) url")
        return value

    @field_validator("conversion_types")
    @classmethod
    def normalize_conversion_types(cls, value: list[str]) -> list[str]:
        output: list[str] = []
        for item in value:
            cleaned = item.strip().lower()
            if cleaned and cleaned not in output:
                output.append(cleaned)
        return output


class IntegrationSetupResponse(BaseModel):
    tenant_id: int
    site_url: str
    tracking_option: TrackingOption
    conversion_types: list[str]
    tracking_snippet: str
    test_url: str
    updated_at_utc: datetime


class SourceStats(BaseModel):
    utm_source: str
    clicks: int
    correlated: int
    conversion_rate: float


class PageStats(BaseModel):
    page_url: str
    clicks: int


class LinkStats(BaseModel):
    tracking_id: str
    campaign_name: str
    clicks_count: int


class TrackingStatsResponse(BaseModel):
    date_from: date
    date_to: date
    total_clicks: int
    page_views: int
    correlated_clicks: int
    correlation_rate: float
    correlations_by_method: dict[str, int]
    avg_seconds_to_message: Optional[float]
    conversions: int
    revenue: float
    avg_order_value: Optional[float]
    source_stats: list[SourceStats]
    top_pages: list[PageStats]
    top_links: list[LinkStats]


class TrackingLinkRecord(BaseModel):
    id: str
    tenant_id: int
    tracking_id: str
    base_url: str
    campaign_name: str
    owner_user_id: Optional[str]
    destination_url: str
    tracked_url: str
    clicks_count: int = 0
    created_at_utc: datetime


class ClickEventRecord(BaseModel):
    id: str
    tenant_id: int
    tracking_id: str
    event_type: ClickEventType
    session_id: Optional[str]
    utm_source: Optional[str]
    utm_medium: Optional[str]
    utm_campaign: Optional[str]
    utm_content: Optional[str]
    utm_term: Optional[str]
    landing_page: Optional[str]
    page_url: Optional[str]
    referrer: Optional[str]
    user_agent: Optional[str]
    ip_address: Optional[str]
    phone: Optional[str]
    message: Optional[str] = None
    session_duration: Optional[int]
    pages_viewed: int = 1
    converted: bool = False
    conversion_value: Optional[float] = None
    matched_at_utc: Optional[datetime] = None
    clicked_at_utc: datetime


class CorrelationRecord(BaseModel):
    id: str
    tenant_id: int
    phone_number: str
    tracking_id: str
    click_id: str
    message_id: Optional[str]
    message_content: str
    correlation_method: CorrelationMethod
    time_elapsed_seconds: int = Field(ge=0)
    correlated_at_utc: datetime


class ConversionRecord(BaseModel):
    id: str
    tenant_id: int
    tracking_id: str
    conversion_type: str
    conversion_value: Optional[float]
    order_id: Optional[str]
    product_ids: list[str]
    customer_email: Optional[str]
    customer_phone: Optional[str]
    link_resolved: bool
    click_id: Optional[str]
    converted_at_utc: datetime


class WebhookDeliveryRecord(BaseModel):
    id: str
    key: str
    channel: str
    tenant_id: int
    event_id: str
    status: WebhookProcessingStatus
    attempts: int
    last_error: Optional[str]
    created_at_utc: datetime
    updated_at_utc: datetime


class IntegrationConfigRecord(BaseModel):
    tenant_id: int
    site_url: str
    tracking_option: TrackingOption
    conversion_types: list[str] = Field(default_factory=list)
    created_at_utc: datetime
    updated_at_utc: datetime
