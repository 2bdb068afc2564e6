"""
Live tariff schedule tables.

``HtsEntry`` holds every promoted version of a tariff line; only one row per
``hts_number`` carries ``is_active=True`` at any time. ``ExtraTaxRule`` rows are
maintained by the surcharge administration tooling and are read-only here.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Index, UniqueConstraint, or_, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db

WILDCARD_HTS_NUMBER = "*"
ALL_COUNTRIES = "ALL"


class HtsEntry(BaseModel):
    """Authoritative tariff line for a given schedule version."""

    __tablename__ = "hts_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    hts_number: Mapped[str] = mapped_column(db.String(20), nullable=False, index=True)
    version: Mapped[str] = mapped_column(db.String(64), nullable=False)
    indent: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    unit: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    general_rate: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    special_rate: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    special_rates: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    other_rate: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    chapter99: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    footnotes: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    quota: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    quota2: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    chapter: Mapped[str | None] = mapped_column(db.String(2), nullable=True, index=True)
    heading: Mapped[str | None] = mapped_column(db.String(4), nullable=True)
    subheading: Mapped[str | None] = mapped_column(db.String(6), nullable=True)
    tariff_line: Mapped[str | None] = mapped_column(db.String(8), nullable=True)
    statistical_suffix: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    parent_hts_number: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    source_version: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    import_date: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False, index=True)
    superseded_by_version: Mapped[str | None] = mapped_column(
        db.String(64),
        nullable=True,
        index=True,
        comment="Version whose promotion deactivated this row.",
    )
    row_hash: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("hts_number", "version", name="uq_hts_entries_number_version"),
        Index(
            "uq_hts_entries_single_active",
            "hts_number",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("idx_hts_entries_active_chapter", "is_active", "chapter"),
    )

    @staticmethod
    def find_active(hts_number: str) -> "HtsEntry | None":
        """Return the currently active row for a code, if any."""
        return HtsEntry.query.filter_by(hts_number=hts_number, is_active=True).one_or_none()


class ExtraTaxRule(BaseModel):
    """
    Surcharge applied on top of the schedule rate.

    A rule targets one code (``hts_number``), a whole chapter (``hts_chapter``),
    or every code when ``hts_number`` is ``"*"``/empty and no chapter is set.
    """

    __tablename__ = "hts_extra_taxes"

    id: Mapped[int] = mapped_column(primary_key=True)
    tax_code: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    tax_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    hts_number: Mapped[str | None] = mapped_column(db.String(20), nullable=True, index=True)
    hts_chapter: Mapped[str | None] = mapped_column(db.String(2), nullable=True, index=True)
    country_code: Mapped[str] = mapped_column(db.String(10), nullable=False, default=ALL_COUNTRIES)
    extra_rate_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="ADD_ON")
    rate_text: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    rate_formula: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    minimum_amount: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 2), nullable=True)
    maximum_amount: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 2), nullable=True)
    is_percentage: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    apply_to: Mapped[str] = mapped_column(db.String(50), nullable=False, default="CUSTOMS_VALUE")
    conditions: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    priority: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)
    effective_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    expiration_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    legal_reference: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (Index("idx_hts_extra_taxes_scope", "is_active", "hts_chapter", "hts_number"),)

    @property
    def is_wildcard(self) -> bool:
        return not self.hts_chapter and (self.hts_number in (None, "", WILDCARD_HTS_NUMBER))

    @staticmethod
    def in_effect_filter(on_date: date):
        """Return the predicate selecting rules effective on ``on_date``."""
        return (
            ExtraTaxRule.is_active.is_(True),
            or_(ExtraTaxRule.effective_date.is_(None), ExtraTaxRule.effective_date <= on_date),
            or_(ExtraTaxRule.expiration_date.is_(None), ExtraTaxRule.expiration_date >= on_date),
        )
