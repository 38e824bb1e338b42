"""Vendor verification documents, owned by the vendor onboarding service."""
from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum as SqlEnum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class DocumentType(str, PyEnum):
    BUSINESS_LICENSE = "BUSINESS_LICENSE"
    INSURANCE_CERTIFICATE = "INSURANCE_CERTIFICATE"
    TAX_DOCUMENTS = "TAX_DOCUMENTS"
    IDENTITY_VERIFICATION = "IDENTITY_VERIFICATION"
    PORTFOLIO = "PORTFOLIO"
    BACKGROUND_CHECK = "BACKGROUND_CHECK"


class DocumentStatus(str, PyEnum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class VendorDocument(Base):
    """A verification document submitted by a vendor."""

    __tablename__ = "vendor_documents"
    __table_args__ = (Index("ix_vendor_documents_vendor_type", "vendor_id", "document_type"),)

    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_type: Mapped[DocumentType] = mapped_column(SqlEnum(DocumentType), nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        SqlEnum(DocumentStatus), nullable=False, default=DocumentStatus.SUBMITTED
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
