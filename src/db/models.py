"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from src.detect.issue_types import SEVERITY_RANK

ACTIVE_ISSUE_STATUSES = ("open", "acknowledged")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Shop(Base):
    """Merchant storefront."""

    __tablename__ = "shops"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    alert_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    monitoring_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product_pages: Mapped[list["ProductPage"]] = relationship(
        "ProductPage", back_populates="shop", cascade="all, delete-orphan"
    )
    alerts: Mapped[list["Alert"]] = relationship(
        "Alert", back_populates="shop", cascade="all, delete-orphan"
    )

    @property
    def slug(self) -> str:
        """Domain without the platform suffix, used in storage keys."""
        return self.domain.replace(".myshopify.com", "")


class ProductPage(Base):
    """Product detail page under monitoring."""

    __tablename__ = "product_pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shop_id: Mapped[int] = mapped_column(Integer, ForeignKey("shops.id"), nullable=False)
    handle: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)  # relative or absolute
    monitoring_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # pending, healthy, warning, critical, error
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    last_scanned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    shop: Mapped["Shop"] = relationship("Shop", back_populates="product_pages")
    scans: Mapped[list["Scan"]] = relationship(
        "Scan", back_populates="product_page", cascade="all, delete-orphan"
    )
    issues: Mapped[list["Issue"]] = relationship(
        "Issue", back_populates="product_page", cascade="all, delete-orphan"
    )

    __table_args__ = (UniqueConstraint("shop_id", "handle", name="uq_page_shop_handle"),)

    def full_url(self, domain: str) -> str:
        """Absolute URL for this page on the given shop domain."""
        if self.url.startswith("http://") or self.url.startswith("https://"):
            return self.url
        path = self.url if self.url.startswith("/") else f"/{self.url}"
        return f"https://{domain}{path}"


class Scan(Base):
    """One scan run of a product page."""

    __tablename__ = "scans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_page_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("product_pages.id"), nullable=False
    )
    # pending, running, completed, failed
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    scan_depth: Mapped[str] = mapped_column(String(8), default="quick", nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Capture
    screenshot_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    html_snapshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    js_errors: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    console_logs: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    network_errors: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    page_load_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    detection_results: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # AI page-level analysis
    ai_page_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_page_healthy: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product_page: Mapped["ProductPage"] = relationship("ProductPage", back_populates="scans")

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def failed(self) -> bool:
        return self.status == "failed"


class Issue(Base):
    """A detected problem on a product page, merged across scans."""

    __tablename__ = "issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_page_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("product_pages.id"), nullable=False
    )
    scan_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("scans.id"), nullable=True
    )
    issue_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(8), nullable=False)  # high, medium, low
    # open, acknowledged, resolved
    status: Mapped[str] = mapped_column(String(16), default="open", nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    first_detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # programmatic or ai
    detection_source: Mapped[str] = mapped_column(
        String(16), default="programmatic", nullable=False
    )

    # AI confirmation fields
    ai_confirmed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    ai_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ai_reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_suggested_fix: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    product_page: Mapped["ProductPage"] = relationship("ProductPage", back_populates="issues")
    alerts: Mapped[list["Alert"]] = relationship(
        "Alert", back_populates="issue", cascade="all, delete-orphan"
    )

    __table_args__ = (
        # At most one open-or-acknowledged issue per page and type
        Index(
            "uq_issue_active_page_type",
            "product_page_id",
            "issue_type",
            unique=True,
            sqlite_where=text("status IN ('open', 'acknowledged')"),
            postgresql_where=text("status IN ('open', 'acknowledged')"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ISSUE_STATUSES

    @property
    def high_severity(self) -> bool:
        return self.severity == "high"

    @property
    def severity_rank(self) -> int:
        return SEVERITY_RANK.get(self.severity, 0)

    @property
    def ai_verified(self) -> bool:
        return self.ai_verified_at is not None

    def record_occurrence(self, scan_id: Optional[int] = None) -> None:
        """Count another detection of this issue."""
        self.occurrence_count = (self.occurrence_count or 1) + 1
        self.last_detected_at = datetime.utcnow()
        if scan_id is not None:
            self.scan_id = scan_id

    def acknowledge(self, by: Optional[str] = None) -> None:
        """Merchant has seen the issue; it stays active until a passing scan."""
        self.status = "acknowledged"
        self.acknowledged_at = datetime.utcnow()
        self.acknowledged_by = by

    def resolve(self) -> None:
        self.status = "resolved"
        self.resolved_at = datetime.utcnow()

    def clear_ai_confirmation(self) -> None:
        """Drop cached AI verdicts after the underlying finding changed."""
        self.ai_confirmed = None
        self.ai_confidence = None
        self.ai_reasoning = None
        self.ai_verified_at = None

    def should_alert(self) -> bool:
        from src.notify.alert_gate import issue_is_alertable

        return issue_is_alertable(self)


class Alert(Base):
    """Notification delivered for an issue on one channel."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shop_id: Mapped[int] = mapped_column(Integer, ForeignKey("shops.id"), nullable=False)
    issue_id: Mapped[int] = mapped_column(Integer, ForeignKey("issues.id"), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(16), nullable=False)  # email, admin
    # pending, sent, failed
    delivery_status: Mapped[str] = mapped_column(
        String(16), default="pending", nullable=False
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    shop: Mapped["Shop"] = relationship("Shop", back_populates="alerts")
    issue: Mapped["Issue"] = relationship("Issue", back_populates="alerts")

    __table_args__ = (
        UniqueConstraint("shop_id", "issue_id", "alert_type", name="uq_alert_shop_issue_type"),
    )
