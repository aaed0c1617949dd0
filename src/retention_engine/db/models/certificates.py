"""Disposal certificate and archive manifest models.

Both tables are append-only: rows are inserted once and never updated or
deleted by the engine.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, DateTime, Enum, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from retention_engine.db.models.base import Base, DisposalMethod, TimestampTZ


class DisposalCertificateRecord(Base):
    """Sealed proof of a single disposal."""

    __tablename__ = "disposal_certificates"

    certificate_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, unique=True)

    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    record_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    legal_basis_code: Mapped[str] = mapped_column(String(100), nullable=False)
    disposal_method: Mapped[DisposalMethod] = mapped_column(
        Enum(DisposalMethod, name="disposal_method", create_constraint=True),
        nullable=False,
    )

    pre_disposal_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    archive_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    compliance_references: Mapped[list] = mapped_column(JSONB, nullable=False)
    system_version: Mapped[str] = mapped_column(String(50), nullable=False)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    certificate_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    signing_key_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[TimestampTZ]

    def __repr__(self) -> str:
        return (
            f"<DisposalCertificateRecord(certificate_id={self.certificate_id}, "
            f"record={self.record_type}/{self.record_id})>"
        )


class ArchiveManifestRecord(Base):
    """Manifest of an archive written before destructive disposal."""

    __tablename__ = "archive_manifests"

    archive_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    record_type: Mapped[str] = mapped_column(String(100), nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_location: Mapped[str] = mapped_column(String(1000), nullable=False)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    record_ids: Mapped[list] = mapped_column(JSONB, nullable=False)
    simulated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<ArchiveManifestRecord(archive_id={self.archive_id}, count={self.record_count})>"
