from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    ClickEventRecord,
    ClickEventType,
    ConversionRecord,
    CorrelationRecord,
    IntegrationConfigRecord,
    TrackingLinkRecord,
    WebhookDeliveryRecord,
)

logger = logging.getLogger("wa_attribution.persistence")


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Write-through storage for the attribution store. Uses SQLAlchemy Core and
    accepts both SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.tracking_links = Table(
            "tracking_links",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("tenant_id", Integer, nullable=False, index=True),
            Column("tracking_id", String(100), nullable=False, unique=True),
            Column("base_url", Text, nullable=False),
            Column("campaign_name", String(255), nullable=False),
            Column("owner_user_id", String(120), nullable=True),
            Column("destination_url", Text, nullable=False),
            Column("tracked_url", Text, nullable=False),
            Column("clicks_count", Integer, nullable=False, default=0),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.click_events = Table(
            "click_events",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("tenant_id", Integer, nullable=False),
            Column("tracking_id", String(100), nullable=False, index=True),
            Column("event_type", String(30), nullable=False),
            Column("session_id", String(120), nullable=True),
            Column("utm_source", String(250), nullable=True),
            Column("utm_medium", String(250), nullable=True),
            Column("utm_campaign", String(250), nullable=True),
            Column("utm_content", String(250), nullable=True),
            Column("utm_term", String(250), nullable=True),
            Column("landing_page", Text, nullable=True),
            Column("page_url", Text, nullable=True),
            Column("referrer", Text, nullable=True),
            Column("user_agent", String(250), nullable=True),
            Column("ip_address", String(45), nullable=True),
            Column("phone", String(20), nullable=True),
            Column("message", Text, nullable=True),
            Column("session_duration", Integer, nullable=True),
            Column("pages_viewed", Integer, nullable=False, default=1),
            Column("converted", Boolean, nullable=False, default=False),
            Column("conversion_value", Float, nullable=True),
            Column("matched_at_utc", DateTime, nullable=True),
            Column("clicked_at_utc", DateTime, nullable=True),
            Index("ix_click_events_candidates", "tenant_id", "clicked_at_utc", "matched_at_utc"),
        )
        self.correlations = Table(
            "correlations",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("tenant_id", Integer, nullable=False, index=True),
            Column("phone_number", String(30), nullable=False, index=True),
            Column("tracking_id", String(100), nullable=False, index=True),
            Column("click_id", String(50), nullable=False),
            Column("message_id", String(255), nullable=True),
            Column("message_content", Text, nullable=False),
            Column("correlation_method", String(30), nullable=False),
            Column("time_elapsed_seconds", Integer, nullable=False),
            Column("correlated_at_utc", DateTime, nullable=False),
            UniqueConstraint("click_id", name="uq_correlations_click_id"),
        )
        self.conversions = Table(
            "conversions",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("tenant_id", Integer, nullable=False, index=True),
            Column("tracking_id", String(100), nullable=False, index=True),
            Column("conversion_type", String(50), nullable=False),
            Column("conversion_value", Float, nullable=True),
            Column("order_id", String(120), nullable=True),
            Column("product_ids_json", Text, nullable=False),
            Column("customer_email", String(254), nullable=True),
            Column("customer_phone", String(20), nullable=True),
            Column("link_resolved", Boolean, nullable=False),
            Column("click_id", String(50), nullable=True),
            Column("converted_at_utc", DateTime, nullable=False),
        )
        self.webhook_deliveries = Table(
            "webhook_deliveries",
            self.metadata,
            Column("key", String(255), primary_key=True),
            Column("id", String(255), nullable=False),
            Column("channel", String(50), nullable=False),
            Column("tenant_id", Integer, nullable=False),
            Column("event_id", String(255), nullable=False),
            Column("status", String(50), nullable=False),
            Column("attempts", Integer, nullable=False),
            Column("last_error", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.integration_configs = Table(
            "integration_configs",
            self.metadata,
            Column("tenant_id", Integer, primary_key=True),
            Column("site_url", Text, nullable=False),
            Column("tracking_option", String(30), nullable=False),
            Column("conversion_types_json", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def _upsert(self, conn: Connection, table: Table, key: str, payload: dict[str, Any]) -> None:
        key_column = table.c[key]
        existing = conn.execute(select(key_column).where(key_column == payload[key])).first()
        if existing:
            values = {name: value for name, value in payload.items() if name != key}
            conn.execute(table.update().where(key_column == payload[key]).values(**values))
        else:
            conn.execute(table.insert().values(**payload))

    def insert_tracking_link(self, record: TrackingLinkRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(self.tracking_links.insert().values(**record.model_dump()))

    def insert_click(self, record: ClickEventRecord, *, count_for_link: bool = False) -> None:
        """
        Append the click and, when asked, bump the owning link's counter in
        the same transaction.
        """
        payload = record.model_dump()
        payload["event_type"] = record.event_type.value
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(self.click_events.insert().values(**payload))
                if count_for_link:
                    conn.execute(
                        self.tracking_links.update()
                        .where(self.tracking_links.c.tracking_id == record.tracking_id)
                        .where(self.tracking_links.c.tenant_id == record.tenant_id)
                        .values(clicks_count=self.tracking_links.c.clicks_count + 1)
                    )

    def set_click_phone(self, click_ids: list[str], phone: str) -> None:
        if not click_ids:
            return
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.click_events.update()
                    .where(self.click_events.c.id.in_(click_ids))
                    .values(phone=phone)
                )

    def list_candidate_clicks(
        self, *, tenant_id: int, since: datetime, until: datetime
    ) -> list[ClickEventRecord]:
        """Unconsumed clicks of one tenant stamped inside ``[since, until]``."""
        table = self.click_events
        query = (
            select(table)
            .where(table.c.tenant_id == tenant_id)
            .where(table.c.clicked_at_utc >= since)
            .where(table.c.clicked_at_utc <= until)
            .where(table.c.matched_at_utc.is_(None))
            .where(table.c.converted.is_(False))
            .where(table.c.event_type != ClickEventType.page_view.value)
            .order_by(table.c.clicked_at_utc.desc(), table.c.id.desc())
        )
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        output: list[ClickEventRecord] = []
        for row in rows:
            record = self._click_from_row(dict(row._mapping))
            if record is not None:
                output.append(record)
        return output

    def claim_click_and_insert_correlation(self, record: CorrelationRecord) -> bool:
        """
        Mark the click as matched only if it is still unmatched, and append the
        correlation in the same transaction. Returns False when another writer
        already consumed the click.
        """
        payload = record.model_dump()
        payload["correlation_method"] = record.correlation_method.value
        with self._lock:
            with self.engine.begin() as conn:
                result = conn.execute(
                    self.click_events.update()
                    .where(self.click_events.c.id == record.click_id)
                    .where(self.click_events.c.matched_at_utc.is_(None))
                    .values(matched_at_utc=record.correlated_at_utc)
                )
                if result.rowcount != 1:
                    return False
                conn.execute(self.correlations.insert().values(**payload))
                return True

    def insert_conversion(self, record: ConversionRecord) -> None:
        """
        Append the conversion and flag its click as converted. Only the
        conversion columns of the click are written, so a concurrent claim on
        the same row is left intact.
        """
        payload = record.model_dump(exclude={"product_ids"})
        payload["product_ids_json"] = json.dumps(record.product_ids)
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(self.conversions.insert().values(**payload))
                if record.click_id:
                    conn.execute(
                        self.click_events.update()
                        .where(self.click_events.c.id == record.click_id)
                        .values(converted=True, conversion_value=record.conversion_value)
                    )

    def upsert_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        payload = record.model_dump()
        payload["status"] = record.status.value
        with self._lock:
            with self.engine.begin() as conn:
                self._upsert(conn, self.webhook_deliveries, "key", payload)

    def upsert_integration_config(self, record: IntegrationConfigRecord) -> None:
        payload = record.model_dump(exclude={"conversion_types"})
        payload["tracking_option"] = record.tracking_option.value
        payload["conversion_types_json"] = json.dumps(record.conversion_types)
        with self._lock:
            with self.engine.begin() as conn:
                self._upsert(conn, self.integration_configs, "tenant_id", payload)

    def _fetch_all(self, table: Table, order_column: str) -> list[dict[str, Any]]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(select(table).order_by(table.c[order_column])).all()
        return [dict(row._mapping) for row in rows]

    def list_tracking_links(self) -> list[TrackingLinkRecord]:
        return [
            TrackingLinkRecord.model_validate(row)
            for row in self._fetch_all(self.tracking_links, "created_at_utc")
        ]

    def list_clicks(self) -> list[ClickEventRecord]:
        output: list[ClickEventRecord] = []
        for row in self._fetch_all(self.click_events, "id"):
            record = self._click_from_row(row)
            if record is not None:
                output.append(record)
        return output

    @staticmethod
    def _click_from_row(row: dict[str, Any]) -> Optional[ClickEventRecord]:
        if not isinstance(row.get("clicked_at_utc"), datetime):
            logger.warning("click_skipped_malformed_timestamp click_id=%s", row.get("id"))
            return None
        row["pages_viewed"] = row.get("pages_viewed") or 1
        row["converted"] = bool(row.get("converted"))
        return ClickEventRecord.model_validate(row)

    def list_correlations(self) -> list[CorrelationRecord]:
        return [
            CorrelationRecord.model_validate(row)
            for row in self._fetch_all(self.correlations, "correlated_at_utc")
        ]

    def list_conversions(self) -> list[ConversionRecord]:
        output: list[ConversionRecord] = []
        for row in self._fetch_all(self.conversions, "converted_at_utc"):
            row["product_ids"] = json.loads(row.pop("product_ids_json") or "[]")
            output.append(ConversionRecord.model_validate(row))
        return output

    def list_webhook_deliveries(self) -> list[WebhookDeliveryRecord]:
        return [
            WebhookDeliveryRecord.model_validate(row)
            for row in self._fetch_all(self.webhook_deliveries, "created_at_utc")
        ]

    def list_integration_configs(self) -> list[IntegrationConfigRecord]:
        output: list[IntegrationConfigRecord] = []
        for row in self._fetch_all(self.integration_configs, "tenant_id"):
            row["conversion_types"] = json.loads(row.pop("conversion_types_json") or "[]")
            output.append(IntegrationConfigRecord.model_validate(row))
        return output
