from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.app.models import (
    ClickEventRecord,
    ClickEventType,
    ConversionCreateRequest,
    ConversionRecord,
    CorrelationMethod,
    CorrelationRecord,
    InboundMessage,
    IntegrationConfigRecord,
    TrackingLinkRecord,
    TrackingOption,
    UtmData,
    WebhookDeliveryRecord,
    WebhookProcessingStatus,
    utc_now,
)
from backend.app.services.dedupe import is_duplicate_click, normalize_phone
from backend.app.services.links import (
    DEFAULT_CAMPAIGN_NAME,
    build_destination_url,
    build_tracked_url,
    generate_tracking_id,
)
from backend.app.services.matching import elapsed_seconds, is_candidate

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence

logger = logging.getLogger("wa_attribution.store")

MAX_TRACKING_ID_ATTEMPTS = 5


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class DuplicateTrackingIdError(StoreConflictError):
    pass


class RecoverableQueryError(Exception):
    """Storage failed in a way that only affects the current operation."""


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.tracking_links: dict[str, TrackingLinkRecord] = {}
        self.clicks: dict[str, ClickEventRecord] = {}
        self.correlations: list[CorrelationRecord] = []
        self.conversions: dict[str, ConversionRecord] = {}
        self.webhook_deliveries: dict[str, WebhookDeliveryRecord] = {}
        self.integration_configs: dict[int, IntegrationConfigRecord] = {}

        if self.persistence:
            for link in self.persistence.list_tracking_links():
                self.tracking_links[link.tracking_id] = link
            for click in self.persistence.list_clicks():
                self.clicks[click.id] = click
            self.correlations = self.persistence.list_correlations()
            for conversion in self.persistence.list_conversions():
                self.conversions[conversion.id] = conversion
            for delivery in self.persistence.list_webhook_deliveries():
                self.webhook_deliveries[delivery.key] = delivery
            for config in self.persistence.list_integration_configs():
                self.integration_configs[config.tenant_id] = config

    # Link registry

    def create_link(
        self,
        *,
        tenant_id: int,
        base_url: str,
        tracking_base_url: str,
        campaign_name: Optional[str] = None,
        owner_user_id: Optional[str] = None,
    ) -> TrackingLinkRecord:
        campaign = (campaign_name or "").strip() or DEFAULT_CAMPAIGN_NAME
        for attempt in range(1, MAX_TRACKING_ID_ATTEMPTS + 1):
            tracking_id = generate_tracking_id()
            try:
                return self._insert_link(
                    tenant_id=tenant_id,
                    tracking_id=tracking_id,
                    base_url=base_url,
                    tracking_base_url=tracking_base_url,
                    campaign_name=campaign,
                    owner_user_id=owner_user_id,
                )
            except DuplicateTrackingIdError:
                logger.warning(
                    "tracking_id_collision tracking_id=%s attempt=%s", tracking_id, attempt
                )
        raise DuplicateTrackingIdError(
            f"could not allocate a unique tracking id after {MAX_TRACKING_ID_ATTEMPTS} attempts"
        )

    def _insert_link(
        self,
        *,
        tenant_id: int,
        tracking_id: str,
        base_url: str,
        tracking_base_url: str,
        campaign_name: str,
        owner_user_id: Optional[str],
    ) -> TrackingLinkRecord:
        with self._lock:
            if tracking_id in self.tracking_links:
                raise DuplicateTrackingIdError(f"tracking id already exists: {tracking_id}")
            record = TrackingLinkRecord(
                id=new_id("lnk"),
                tenant_id=tenant_id,
                tracking_id=tracking_id,
                base_url=base_url,
                campaign_name=campaign_name,
                owner_user_id=owner_user_id,
                destination_url=build_destination_url(
                    base_url=base_url,
                    campaign_name=campaign_name,
                    tracking_id=tracking_id,
                    tenant_id=tenant_id,
                ),
                tracked_url=build_tracked_url(
                    tracking_base_url=tracking_base_url,
                    tracking_id=tracking_id,
                    tenant_id=tenant_id,
                ),
                clicks_count=0,
                created_at_utc=utc_now(),
            )
            if self.persistence:
                try:
                    self.persistence.insert_tracking_link(record)
                except IntegrityError as exc:
                    raise DuplicateTrackingIdError(
                        f"tracking id already exists: {tracking_id}"
                    ) from exc
            self.tracking_links[tracking_id] = record
            return record

    def resolve_link(self, tracking_id: str, tenant_id: Optional[int] = None) -> TrackingLinkRecord:
        link = self.tracking_links.get(tracking_id)
        if not link or (tenant_id is not None and link.tenant_id != tenant_id):
            raise StoreNotFoundError(f"tracking link not found: {tracking_id}")
        return link

    def list_links(self, *, tenant_id: int, limit: int = 100) -> list[TrackingLinkRecord]:
        with self._lock:
            records = [
                link for link in self.tracking_links.values() if link.tenant_id == tenant_id
            ]
        records.sort(key=lambda link: link.created_at_utc, reverse=True)
        safe_limit = max(1, min(limit, 500))
        return records[:safe_limit]

    # Click recorder

    def record_click(
        self,
        *,
        tenant_id: int,
        tracking_id: Optional[str],
        utm: UtmData,
        session_id: Optional[str],
        page_url: Optional[str],
        referrer: Optional[str],
        user_agent: Optional[str],
        ip_address: Optional[str],
        event_type: ClickEventType = ClickEventType.whatsapp_click,
        phone: Optional[str] = None,
        message: Optional[str] = None,
        session_duration: Optional[int] = None,
        pages_viewed: Optional[int] = None,
        dedup_window_seconds: int = 0,
        clicked_at: Optional[datetime] = None,
    ) -> tuple[ClickEventRecord, bool]:
        now = clicked_at or utc_now()
        with self._lock:
            if not tracking_id:
                tracking_id = self._unused_tracking_id(tenant_id)
            elif session_id and dedup_window_seconds > 0:
                for existing in self.clicks.values():
                    if is_duplicate_click(
                        existing,
                        tenant_id=tenant_id,
                        session_id=session_id,
                        tracking_id=tracking_id,
                        clicked_at=now,
                        window_seconds=dedup_window_seconds,
                    ):
                        return existing, True

            record = ClickEventRecord(
                id=new_id("clk"),
                tenant_id=tenant_id,
                tracking_id=tracking_id,
                event_type=event_type,
                session_id=session_id,
                utm_source=utm.utm_source,
                utm_medium=utm.utm_medium,
                utm_campaign=utm.utm_campaign,
                utm_content=utm.utm_content,
                utm_term=utm.utm_term,
                landing_page=utm.landing_page,
                page_url=page_url,
                referrer=referrer,
                user_agent=user_agent[:250] if user_agent else None,
                ip_address=ip_address,
                phone=normalize_phone(phone) or None,
                message=message,
                session_duration=session_duration,
                pages_viewed=pages_viewed or 1,
                clicked_at_utc=now,
            )
            link = self.tracking_links.get(tracking_id)
            counted = bool(
                event_type != ClickEventType.page_view and link and link.tenant_id == tenant_id
            )
            if self.persistence:
                self.persistence.insert_click(record, count_for_link=counted)

            self.clicks[record.id] = record
            if counted:
                self.tracking_links[tracking_id] = link.model_copy(
                    update={"clicks_count": link.clicks_count + 1}
                )
            return record, False

    def _unused_tracking_id(self, tenant_id: int) -> str:
        taken = set(self.tracking_links)
        taken.update(click.tracking_id for click in self.clicks.values() if click.tenant_id == tenant_id)
        for attempt in range(1, MAX_TRACKING_ID_ATTEMPTS + 1):
            tracking_id = generate_tracking_id()
            if tracking_id not in taken:
                return tracking_id
            logger.warning("tracking_id_collision tracking_id=%s attempt=%s", tracking_id, attempt)
        raise DuplicateTrackingIdError(
            f"could not allocate a unique tracking id after {MAX_TRACKING_ID_ATTEMPTS} attempts"
        )

    def get_click(self, click_id: str) -> ClickEventRecord:
        click = self.clicks.get(click_id)
        if not click:
            raise StoreNotFoundError(f"click not found: {click_id}")
        return click

    def list_clicks(
        self,
        *,
        tenant_id: int,
        tracking_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[ClickEventRecord]:
        with self._lock:
            records = [click for click in self.clicks.values() if click.tenant_id == tenant_id]
        if tracking_id:
            records = [click for click in records if click.tracking_id == tracking_id]
        records.sort(key=lambda click: (click.clicked_at_utc, click.id), reverse=True)
        safe_limit = max(1, min(limit, 500))
        return records[:safe_limit]

    def associate_phone(
        self,
        *,
        tenant_id: int,
        phone: str,
        tracking_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> list[ClickEventRecord]:
        """
        Attach a WhatsApp phone to earlier anonymous clicks. A tracking id
        selects all of its clicks; otherwise the session's clicks that have
        no phone yet are selected.
        """
        normalized = normalize_phone(phone)
        with self._lock:
            if tracking_id:
                selected = [
                    click
                    for click in self.clicks.values()
                    if click.tenant_id == tenant_id and click.tracking_id == tracking_id
                ]
            elif session_id:
                selected = [
                    click
                    for click in self.clicks.values()
                    if click.tenant_id == tenant_id
                    and click.session_id == session_id
                    and click.phone is None
                ]
            else:
                selected = []
            if not selected:
                raise StoreNotFoundError(
                    f"no clicks found for tracking_id={tracking_id} session_id={session_id}"
                )
            if self.persistence:
                self.persistence.set_click_phone([click.id for click in selected], normalized)

            updated = []
            for click in selected:
                click = click.model_copy(update={"phone": normalized})
                self.clicks[click.id] = click
                updated.append(click)
            logger.info(
                "phone_associated tenant_id=%s phone=%s clicks=%s",
                tenant_id,
                normalized,
                len(updated),
            )
            updated.sort(key=lambda click: (click.clicked_at_utc, click.id), reverse=True)
            return updated

    # Correlation

    def list_correlation_candidates(
        self,
        *,
        tenant_id: int,
        received_at: datetime,
        window: timedelta,
    ) -> list[ClickEventRecord]:
        """
        Unconsumed clicks of the tenant inside the window, newest first. With
        persistence the database is queried, so clicks recorded by other
        processes sharing it are seen too.
        """
        if not self.persistence:
            with self._lock:
                candidates = [
                    click
                    for click in self.clicks.values()
                    if is_candidate(
                        click, tenant_id=tenant_id, received_at=received_at, window=window
                    )
                ]
            candidates.sort(key=lambda click: (click.clicked_at_utc, click.id), reverse=True)
            return candidates

        try:
            stored = self.persistence.list_candidate_clicks(
                tenant_id=tenant_id, since=received_at - window, until=received_at
            )
        except SQLAlchemyError as exc:
            raise RecoverableQueryError(f"candidate query failed: {exc}") from exc
        candidates = []
        with self._lock:
            for click in stored:
                # a copy this process already consumed stays consumed
                known = self.clicks.setdefault(click.id, click)
                if is_candidate(known, tenant_id=tenant_id, received_at=received_at, window=window):
                    candidates.append(known)
        return candidates

    def claim_click(
        self,
        *,
        click_id: str,
        message: InboundMessage,
        method: CorrelationMethod,
    ) -> Optional[CorrelationRecord]:
        """
        Consume the click for this message and append the correlation. Returns
        None when the click was already consumed by another message.
        """
        with self._lock:
            click = self.get_click(click_id)
            if click.matched_at_utc is not None:
                return None
            record = CorrelationRecord(
                id=new_id("corr"),
                tenant_id=message.tenant_id,
                phone_number=normalize_phone(message.phone_number) or message.phone_number,
                tracking_id=click.tracking_id,
                click_id=click.id,
                message_id=message.message_id,
                message_content=message.content,
                correlation_method=method,
                time_elapsed_seconds=elapsed_seconds(click, message.received_at_utc),
                correlated_at_utc=message.received_at_utc,
            )
            if self.persistence:
                try:
                    claimed = self.persistence.claim_click_and_insert_correlation(record)
                except SQLAlchemyError as exc:
                    raise RecoverableQueryError(f"correlation write failed: {exc}") from exc
                if not claimed:
                    # consumed by another process sharing the database
                    self.clicks[click.id] = click.model_copy(
                        update={"matched_at_utc": record.correlated_at_utc}
                    )
                    return None
            self.clicks[click.id] = click.model_copy(
                update={"matched_at_utc": record.correlated_at_utc}
            )
            self.correlations.append(record)
            return record

    def list_correlations(
        self,
        *,
        tenant_id: int,
        phone_number: Optional[str] = None,
        limit: int = 100,
    ) -> list[CorrelationRecord]:
        with self._lock:
            records = [record for record in self.correlations if record.tenant_id == tenant_id]
        if phone_number:
            phone = normalize_phone(phone_number)
            records = [record for record in records if record.phone_number == phone]
        records.sort(key=lambda record: record.correlated_at_utc, reverse=True)
        safe_limit = max(1, min(limit, 500))
        return records[:safe_limit]

    # Conversion recorder

    def record_conversion(
        self, *, tenant_id: int, request: ConversionCreateRequest
    ) -> tuple[ConversionRecord, bool]:
        tracking_id = request.tracking_id.strip()
        order_id = (request.order_id or "").strip() or None
        with self._lock:
            if order_id:
                for existing in self.conversions.values():
                    if existing.tenant_id == tenant_id and existing.order_id == order_id:
                        return existing, True

            link = self.tracking_links.get(tracking_id)
            link_resolved = bool(link and link.tenant_id == tenant_id)

            click = self._latest_unconverted_click(tenant_id=tenant_id, tracking_id=tracking_id)
            record = ConversionRecord(
                id=new_id("conv"),
                tenant_id=tenant_id,
                tracking_id=tracking_id,
                conversion_type=request.conversion_type.strip().lower(),
                conversion_value=request.conversion_value,
                order_id=order_id,
                product_ids=request.product_ids,
                customer_email=request.customer_email,
                customer_phone=normalize_phone(request.customer_phone) or None,
                link_resolved=link_resolved,
                click_id=click.id if click else None,
                converted_at_utc=utc_now(),
            )
            if self.persistence:
                self.persistence.insert_conversion(record)

            self.conversions[record.id] = record
            if click:
                self.clicks[click.id] = click.model_copy(
                    update={"converted": True, "conversion_value": request.conversion_value}
                )
            if not link_resolved:
                logger.info(
                    "conversion_unresolved_tracking_id tenant_id=%s tracking_id=%s",
                    tenant_id,
                    tracking_id,
                )
            return record, False

    def _latest_unconverted_click(
        self, *, tenant_id: int, tracking_id: str
    ) -> Optional[ClickEventRecord]:
        matches = [
            click
            for click in self.clicks.values()
            if click.tenant_id == tenant_id
            and click.tracking_id == tracking_id
            and not click.converted
            and click.event_type != ClickEventType.page_view
        ]
        if not matches:
            return None
        return max(matches, key=lambda click: (click.clicked_at_utc, click.id))

    def list_conversions(self, *, tenant_id: int, limit: int = 100) -> list[ConversionRecord]:
        with self._lock:
            records = [
                record for record in self.conversions.values() if record.tenant_id == tenant_id
            ]
        records.sort(key=lambda record: record.converted_at_utc, reverse=True)
        safe_limit = max(1, min(limit, 500))
        return records[:safe_limit]

    # Reporting

    def tracking_stats(self, *, tenant_id: int, date_from: date, date_to: date) -> dict:
        with self._lock:
            clicks = [click for click in self.clicks.values() if click.tenant_id == tenant_id]
            correlations = [record for record in self.correlations if record.tenant_id == tenant_id]
            conversions = [
                record for record in self.conversions.values() if record.tenant_id == tenant_id
            ]
            links = [link for link in self.tracking_links.values() if link.tenant_id == tenant_id]

        def in_range(dt_value: datetime) -> bool:
            return date_from <= dt_value.date() <= date_to

        clicks = [click for click in clicks if in_range(click.clicked_at_utc)]
        correlations = [record for record in correlations if in_range(record.correlated_at_utc)]
        conversions = [record for record in conversions if in_range(record.converted_at_utc)]

        click_events = [click for click in clicks if click.event_type != ClickEventType.page_view]
        page_views = len(clicks) - len(click_events)
        correlated_ids = {record.click_id for record in correlations}

        by_source: dict[str, dict[str, int]] = {}
        pages: dict[str, int] = {}
        for click in click_events:
            source = (click.utm_source or "direct").strip().lower() or "direct"
            bucket = by_source.setdefault(source, {"clicks": 0, "correlated": 0})
            bucket["clicks"] += 1
            if click.id in correlated_ids:
                bucket["correlated"] += 1
            if click.page_url:
                pages[click.page_url] = pages.get(click.page_url, 0) + 1

        source_stats = [
            {
                "utm_source": source,
                "clicks": bucket["clicks"],
                "correlated": bucket["correlated"],
                "conversion_rate": round((bucket["correlated"] / bucket["clicks"]) * 100, 1),
            }
            for source, bucket in by_source.items()
        ]
        source_stats.sort(key=lambda row: (-row["clicks"], row["utm_source"]))
        top_pages = [
            {"page_url": page_url, "clicks": count}
            for page_url, count in sorted(pages.items(), key=lambda item: (-item[1], item[0]))[:10]
        ]

        correlations_by_method = {method.value: 0 for method in CorrelationMethod}
        for record in correlations:
            method = record.correlation_method.value
            correlations_by_method[method] = correlations_by_method.get(method, 0) + 1
        avg_seconds = (
            round(sum(record.time_elapsed_seconds for record in correlations) / len(correlations), 1)
            if correlations
            else None
        )

        valued = [record.conversion_value for record in conversions if record.conversion_value is not None]
        revenue = round(sum(valued), 2)
        avg_order_value = round(revenue / len(valued), 2) if valued else None

        total_clicks = len(click_events)
        correlated_clicks = len([click for click in click_events if click.id in correlated_ids])
        correlation_rate = (
            round((correlated_clicks / total_clicks) * 100, 2) if total_clicks else 0.0
        )
        links.sort(key=lambda link: (-link.clicks_count, link.tracking_id))

        return {
            "date_from": date_from,
            "date_to": date_to,
            "total_clicks": total_clicks,
            "page_views": page_views,
            "correlated_clicks": correlated_clicks,
            "correlation_rate": correlation_rate,
            "correlations_by_method": correlations_by_method,
            "avg_seconds_to_message": avg_seconds,
            "conversions": len(conversions),
            "revenue": revenue,
            "avg_order_value": avg_order_value,
            "source_stats": source_stats,
            "top_pages": top_pages,
            "top_links": [
                {
                    "tracking_id": link.tracking_id,
                    "campaign_name": link.campaign_name,
                    "clicks_count": link.clicks_count,
                }
                for link in links[:10]
            ],
        }

    # Site integration

    def save_integration_config(
        self,
        *,
        tenant_id: int,
        site_url: str,
        tracking_option: TrackingOption,
        conversion_types: list[str],
    ) -> IntegrationConfigRecord:
        with self._lock:
            now = utc_now()
            existing = self.integration_configs.get(tenant_id)
            record = IntegrationConfigRecord(
                tenant_id=tenant_id,
                site_url=site_url,
                tracking_option=tracking_option,
                conversion_types=conversion_types,
                created_at_utc=existing.created_at_utc if existing else now,
                updated_at_utc=now,
            )
            if self.persistence:
                self.persistence.upsert_integration_config(record)
            self.integration_configs[tenant_id] = record
            return record

    def get_integration_config(self, tenant_id: int) -> IntegrationConfigRecord:
        record = self.integration_configs.get(tenant_id)
        if not record:
            raise StoreNotFoundError(f"integration not configured for tenant {tenant_id}")
        return record

    # Webhook delivery ledger

    def ensure_webhook_delivery(
        self, *, channel: str, tenant_id: int, event_id: str
    ) -> WebhookDeliveryRecord:
        with self._lock:
            key = self._webhook_key(channel=channel, tenant_id=tenant_id, event_id=event_id)
            existing = self.webhook_deliveries.get(key)
            if existing:
                return existing
            record = self._new_delivery(
                key=key, channel=channel, tenant_id=tenant_id, event_id=event_id
            )
            self.webhook_deliveries[key] = record
            self._persist_webhook_delivery(record)
            return record

    def record_webhook_attempt(
        self,
        *,
        channel: str,
        tenant_id: int,
        event_id: str,
        success: bool,
        error: Optional[str] = None,
    ) -> WebhookDeliveryRecord:
        with self._lock:
            key = self._webhook_key(channel=channel, tenant_id=tenant_id, event_id=event_id)
            record = self.webhook_deliveries.get(key) or self._new_delivery(
                key=key, channel=channel, tenant_id=tenant_id, event_id=event_id
            )
            if success:
                status = WebhookProcessingStatus.processed
                last_error = None
            else:
                status = WebhookProcessingStatus.failed
                last_error = error or "unknown webhook processing error"
            updated = record.model_copy(
                update={
                    "attempts": record.attempts + 1,
                    "status": status,
                    "last_error": last_error,
                    "updated_at_utc": utc_now(),
                }
            )
            self.webhook_deliveries[key] = updated
            self._persist_webhook_delivery(updated)
            return updated

    @staticmethod
    def _new_delivery(
        *, key: str, channel: str, tenant_id: int, event_id: str
    ) -> WebhookDeliveryRecord:
        now = utc_now()
        return WebhookDeliveryRecord(
            id=new_id("whk"),
            key=key,
            channel=channel,
            tenant_id=tenant_id,
            event_id=event_id,
            status=WebhookProcessingStatus.received,
            attempts=0,
            last_error=None,
            created_at_utc=now,
            updated_at_utc=now,
        )

    def _persist_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        if self.persistence:
            self.persistence.upsert_webhook_delivery(record)

    @staticmethod
    def _webhook_key(*, channel: str, tenant_id: int, event_id: str) -> str:
        return f"{channel}:{tenant_id}:{event_id}"
