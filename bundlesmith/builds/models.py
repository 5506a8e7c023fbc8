"""Build history ORM model.

This module defines the BuildRecord model storing one row per product
per run, so past outcomes can be listed with ``bundlesmith history``.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bundlesmith.db import Base
from bundlesmith.types import ProductOutcome


class BuildRecord(Base):
    """ORM model for the outcome of one product in one run.

    Attributes:
        id: Primary key.
        run_id: Identifier shared by every record of a run.
        run_mode: Run mode (prepare or create).
        package_id: Identity of the owning package.
        target_name: Target name of the product.
        fingerprint: Fingerprint computed for the product, if any.
        outcome: Product outcome (reused, rebuilt, failed).
        cache_source: Where a reused bundle came from (local, remote).
        bundle_path: Published bundle path.
        log_path: Compiler log of the failing slice, if any.
        recorded_at: Timestamp when the row was written.
        started_at: Timestamp when processing of the product started.
        finished_at: Timestamp when processing of the product finished.
        error_type: Machine-readable error code if the product failed.
        error_message: Error message if the product failed.
        exit_code: Compiler exit status of a failed invocation.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    run_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    run_mode: Mapped[str] = mapped_column(String(20), nullable=False)

    # Product identity
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    fingerprint: Mapped[str | None] = mapped_column(String(80), nullable=True)

    # Outcome
    outcome: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    cache_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bundle_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Timing
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_build_records_target_outcome", "target_name", "outcome"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, target='{self.target_name}', "
            f"outcome='{self.outcome}', run_id='{self.run_id}')>"
        )

    def is_failed(self) -> bool:
        """Check if the product failed in this run."""
        return self.outcome == ProductOutcome.FAILED.value


__all__ = ["BuildRecord"]
