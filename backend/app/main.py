from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, RedirectResponse

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    ClickEventRecord,
    ClickEventType,
    ClickTrackRequest,
    ClickTrackResponse,
    ConversionCreateRequest,
    ConversionCreateResponse,
    ConversionRecord,
    CorrelationRecord,
    IntegrationConfigRecord,
    IntegrationSetupRequest,
    IntegrationSetupResponse,
    PhoneAssociationRequest,
    PhoneAssociationResponse,
    TrackingLinkCreateRequest,
    TrackingLinkResponse,
    TrackingStatsResponse,
    UtmData,
    WebhookEventRequest,
    WebhookEventResponse,
    WebhookProcessingStatus,
    utc_now,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlitePersistence
from backend.app.services.channel_events import PermanentWebhookError, process_channel_event
from backend.app.services.integration import build_test_url, build_tracking_snippet
from backend.app.services.webhooks import (
    SignatureVerificationError,
    verify_subscription_challenge,
    verify_whatsapp_signature,
)
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("wa_attribution.api")


def create_app() -> FastAPI:
    app = FastAPI(title="WhatsApp Click Attribution API", version="0.1.0")
    settings = load_settings()
    configure_logging(settings.log_level)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    app.state.store = InMemoryStore(persistence=persistence)
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first[:45]
    return request.client.host if request.client else None


def resolve_tenant(context: AuthContext, requested: Optional[int]) -> int:
    tenant_id = requested or context.tenant_id
    if not context.can_act_for(tenant_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"not allowed to act for tenant {tenant_id}",
        )
    return tenant_id


def integration_response(
    record: IntegrationConfigRecord, settings: Settings
) -> IntegrationSetupResponse:
    return IntegrationSetupResponse(
        tenant_id=record.tenant_id,
        site_url=record.site_url,
        tracking_option=record.tracking_option,
        conversion_types=record.conversion_types,
        tracking_snippet=build_tracking_snippet(
            tenant_id=record.tenant_id,
            tracking_base_url=settings.tracking_base_url,
            tracking_option=record.tracking_option,
        ),
        test_url=build_test_url(site_url=record.site_url, tenant_id=record.tenant_id),
        updated_at_utc=record.updated_at_utc,
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.post("/track/whatsapp-click", response_model=ClickTrackResponse)
    def track_whatsapp_click(payload: ClickTrackRequest, request: Request) -> ClickTrackResponse:
        store = get_store(request)
        settings = get_settings(request)
        click, deduplicated = store.record_click(
            tenant_id=payload.tenant_id or settings.default_tenant_id,
            tracking_id=payload.tracking_id,
            utm=payload.utm_data,
            session_id=payload.session_id,
            page_url=payload.page_url,
            referrer=payload.referrer,
            user_agent=payload.user_agent or request.headers.get("user-agent"),
            ip_address=client_ip(request),
            event_type=payload.event_type,
            phone=payload.phone,
            message=payload.message,
            session_duration=payload.session_duration,
            pages_viewed=payload.pages_viewed,
            dedup_window_seconds=settings.click_dedup_window_seconds,
        )
        return ClickTrackResponse(
            tracking_id=click.tracking_id,
            click_id=click.id,
            deduplicated=deduplicated,
        )

    @router.post("/track/associate-user", response_model=PhoneAssociationResponse)
    def associate_phone(
        payload: PhoneAssociationRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("service", "marketer", "admin")),
    ) -> PhoneAssociationResponse:
        store = get_store(request)
        tenant_id = resolve_tenant(context, payload.tenant_id)
        try:
            clicks = store.associate_phone(
                tenant_id=tenant_id,
                phone=payload.phone,
                tracking_id=payload.tracking_id,
                session_id=payload.session_id,
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return PhoneAssociationResponse(
            phone=clicks[0].phone or payload.phone,
            click_ids=[click.id for click in clicks],
        )

    @router.get("/track/{tracking_id}")
    def follow_tracking_link(
        tracking_id: str,
        request: Request,
        tenant: Optional[int] = None,
    ) -> RedirectResponse:
        store = get_store(request)
        settings = get_settings(request)
        target = settings.tracking_fallback_url
        tenant_id = tenant or settings.default_tenant_id
        try:
            link = store.resolve_link(tracking_id, tenant_id=tenant)
            target = link.destination_url
            tenant_id = link.tenant_id
        except StoreNotFoundError:
            logger.info("tracking_link_unknown tracking_id=%s tenant=%s", tracking_id, tenant)
        try:
            store.record_click(
                tenant_id=tenant_id,
                tracking_id=tracking_id,
                utm=UtmData(utm_source="whatsapp", utm_medium="chat"),
                session_id=None,
                page_url=str(request.url),
                referrer=request.headers.get("referer"),
                user_agent=request.headers.get("user-agent"),
                ip_address=client_ip(request),
                event_type=ClickEventType.link_click,
            )
        except Exception:
            # a redirect is always served, even when the click could not be stored
            logger.exception("link_click_record_failed tracking_id=%s", tracking_id)
        return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)

    @router.post("/links", response_model=TrackingLinkResponse)
    def create_link(
        payload: TrackingLinkCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> TrackingLinkResponse:
        store = get_store(request)
        settings = get_settings(request)
        try:
            link = store.create_link(
                tenant_id=context.tenant_id,
                base_url=payload.base_url,
                tracking_base_url=settings.tracking_base_url,
                campaign_name=payload.campaign_name,
                owner_user_id=payload.owner_user_id or context.user_id,
            )
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return TrackingLinkResponse.model_validate(link.model_dump())

    @router.get("/links", response_model=list[TrackingLinkResponse])
    def list_links(
        request: Request,
        limit: int = 100,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> list[TrackingLinkResponse]:
        store = get_store(request)
        links = store.list_links(tenant_id=context.tenant_id, limit=limit)
        return [TrackingLinkResponse.model_validate(link.model_dump()) for link in links]

    @router.get("/links/{tracking_id}", response_model=TrackingLinkResponse)
    def get_link(
        tracking_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> TrackingLinkResponse:
        store = get_store(request)
        try:
            link = store.resolve_link(tracking_id, tenant_id=context.tenant_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return TrackingLinkResponse.model_validate(link.model_dump())

    @router.get("/clicks", response_model=list[ClickEventRecord])
    def list_clicks(
        request: Request,
        tracking_id: Optional[str] = None,
        limit: int = 100,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> list[ClickEventRecord]:
        store = get_store(request)
        return store.list_clicks(tenant_id=context.tenant_id, tracking_id=tracking_id, limit=limit)

    @router.get("/correlations", response_model=list[CorrelationRecord])
    def list_correlations(
        request: Request,
        phone: Optional[str] = None,
        limit: int = 100,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> list[CorrelationRecord]:
        store = get_store(request)
        return store.list_correlations(tenant_id=context.tenant_id, phone_number=phone, limit=limit)

    @router.post("/conversions", response_model=ConversionCreateResponse)
    def create_conversion(
        payload: ConversionCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("service", "marketer", "admin")),
    ) -> ConversionCreateResponse:
        store = get_store(request)
        tenant_id = resolve_tenant(context, payload.tenant_id)
        conversion, deduplicated = store.record_conversion(tenant_id=tenant_id, request=payload)
        return ConversionCreateResponse(
            conversion_id=conversion.id,
            tracking_id=conversion.tracking_id,
            link_resolved=conversion.link_resolved,
            deduplicated=deduplicated,
            click_id=conversion.click_id,
        )

    @router.get("/conversions", response_model=list[ConversionRecord])
    def list_conversions(
        request: Request,
        limit: int = 100,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> list[ConversionRecord]:
        store = get_store(request)
        return store.list_conversions(tenant_id=context.tenant_id, limit=limit)

    @router.get("/tracking/stats", response_model=TrackingStatsResponse)
    def tracking_stats(
        request: Request,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> TrackingStatsResponse:
        store = get_store(request)
        end = date_to or utc_now().date()
        start = date_from or (end - timedelta(days=29))
        if start > end:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="date_from cannot be greater than date_to",
            )
        summary = store.tracking_stats(tenant_id=context.tenant_id, date_from=start, date_to=end)
        return TrackingStatsResponse.model_validate(summary)

    @router.post("/integration/setup", response_model=IntegrationSetupResponse)
    def setup_integration(
        payload: IntegrationSetupRequest,
        request: Request,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> IntegrationSetupResponse:
        store = get_store(request)
        record = store.save_integration_config(
            tenant_id=context.tenant_id,
            site_url=payload.site_url,
            tracking_option=payload.tracking_option,
            conversion_types=payload.conversion_types,
        )
        logger.info(
            "integration_configured tenant_id=%s tracking_option=%s",
            record.tenant_id,
            record.tracking_option.value,
        )
        return integration_response(record, get_settings(request))

    @router.get("/integration/setup", response_model=IntegrationSetupResponse)
    def get_integration(
        request: Request,
        context: AuthContext = Depends(require_roles("marketer", "admin")),
    ) -> IntegrationSetupResponse:
        store = get_store(request)
        try:
            record = store.get_integration_config(context.tenant_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return integration_response(record, get_settings(request))

    @router.get("/webhooks/whatsapp", response_class=PlainTextResponse)
    def verify_whatsapp_webhook(request: Request) -> Response:
        settings = get_settings(request)
        try:
            challenge = verify_subscription_challenge(
                request.query_params, settings.whatsapp_verify_token
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        logger.info("webhook_verified channel=whatsapp")
        return PlainTextResponse(challenge)

    @router.post("/webhooks/whatsapp", response_model=WebhookEventResponse)
    async def whatsapp_webhook(
        request: Request,
        context: AuthContext = Depends(require_roles("service", "admin")),
    ) -> WebhookEventResponse:
        store = get_store(request)
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_whatsapp_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.whatsapp_webhook_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            payload = WebhookEventRequest.model_validate(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc

        tenant_id = resolve_tenant(context, payload.tenant_id)
        existing = store.ensure_webhook_delivery(
            channel="whatsapp", tenant_id=tenant_id, event_id=payload.event_id
        )
        if existing.status == WebhookProcessingStatus.processed:
            return WebhookEventResponse(status="duplicate", attempts=existing.attempts)
        if existing.status == WebhookProcessingStatus.failed:
            return WebhookEventResponse(
                status="failed",
                attempts=existing.attempts,
                detail=existing.last_error,
            )

        try:
            detail = process_channel_event(
                store=store,
                payload=payload,
                tenant_id=tenant_id,
                window_minutes=settings.correlation_window_minutes,
                metrics=get_metrics(request),
            )
        except PermanentWebhookError as exc:
            logger.warning(
                "webhook_rejected channel=whatsapp tenant_id=%s event_id=%s reason=%s",
                tenant_id,
                payload.event_id,
                exc,
            )
            record = store.record_webhook_attempt(
                channel="whatsapp",
                tenant_id=tenant_id,
                event_id=payload.event_id,
                success=False,
                error=str(exc),
            )
            return WebhookEventResponse(
                status=record.status.value,
                attempts=record.attempts,
                detail=record.last_error,
            )

        record = store.record_webhook_attempt(
            channel="whatsapp",
            tenant_id=tenant_id,
            event_id=payload.event_id,
            success=True,
        )
        return WebhookEventResponse(status="processed", attempts=record.attempts, detail=detail)

    return router


app = create_app()
