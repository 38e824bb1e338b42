"""Vendor verification compliance checks run before any payout transfer."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models.vendor_document import DocumentStatus, DocumentType, VendorDocument
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


class RiskTier(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


RISK_TIER_REQUIREMENTS: Mapping[RiskTier, frozenset[DocumentType]] = {
    RiskTier.HIGH: frozenset(
        {
            DocumentType.BUSINESS_LICENSE,
            DocumentType.INSURANCE_CERTIFICATE,
            DocumentType.TAX_DOCUMENTS,
            DocumentType.IDENTITY_VERIFICATION,
            DocumentType.BACKGROUND_CHECK,
        }
    ),
    RiskTier.MEDIUM: frozenset(
        {
            DocumentType.INSURANCE_CERTIFICATE,
            DocumentType.TAX_DOCUMENTS,
            DocumentType.IDENTITY_VERIFICATION,
        }
    ),
    RiskTier.LOW: frozenset({DocumentType.TAX_DOCUMENTS, DocumentType.IDENTITY_VERIFICATION}),
}


@dataclass(frozen=True)
class CategoryRequirements:
    risk_tier: RiskTier
    extra: frozenset[DocumentType] = frozenset()

    @property
    def required(self) -> frozenset[DocumentType]:
        return RISK_TIER_REQUIREMENTS[self.risk_tier] | self.extra


_PORTFOLIO = frozenset({DocumentType.PORTFOLIO})

CATEGORY_REQUIREMENTS: Mapping[str, CategoryRequirements] = {
    "DEFAULT": CategoryRequirements(RiskTier.LOW, _PORTFOLIO | {DocumentType.BUSINESS_LICENSE}),
    "VENUE": CategoryRequirements(RiskTier.HIGH, _PORTFOLIO),
    "CATERING": CategoryRequirements(RiskTier.HIGH, _PORTFOLIO),
    "TRANSPORTATION": CategoryRequirements(RiskTier.HIGH),
    "SECURITY": CategoryRequirements(RiskTier.HIGH),
    "ENTERTAINMENT": CategoryRequirements(RiskTier.MEDIUM, _PORTFOLIO | {DocumentType.BACKGROUND_CHECK}),
    "PHOTOGRAPHY": CategoryRequirements(RiskTier.MEDIUM, _PORTFOLIO),
    "VIDEOGRAPHY": CategoryRequirements(RiskTier.MEDIUM, _PORTFOLIO),
    "AUDIO_VISUAL": CategoryRequirements(RiskTier.MEDIUM, _PORTFOLIO | {DocumentType.BUSINESS_LICENSE}),
    "DECORATION": CategoryRequirements(RiskTier.LOW, _PORTFOLIO | {DocumentType.BUSINESS_LICENSE}),
}

# Stable ordering for reporting missing documents.
_DOCUMENT_ORDER = list(DocumentType)


@dataclass(frozen=True)
class ComplianceResult:
    vendor_id: str
    category: str
    risk_tier: RiskTier
    compliant: bool
    missing_requirements: tuple[DocumentType, ...]


def requirements_for(category: str) -> CategoryRequirements:
    return CATEGORY_REQUIREMENTS.get((category or "").upper(), CATEGORY_REQUIREMENTS["DEFAULT"])


def approved_document_types(db: Session, vendor_id: str, *, now: datetime | None = None) -> set[DocumentType]:
    """Return the vendor's approved, unexpired document types."""

    now = now or utcnow()
    stmt = select(VendorDocument.document_type).where(
        VendorDocument.vendor_id == vendor_id,
        VendorDocument.status == DocumentStatus.APPROVED,
        or_(VendorDocument.expires_at.is_(None), VendorDocument.expires_at > now),
    )
    return set(db.scalars(stmt).all())


def evaluate(vendor_id: str, category: str, approved: set[DocumentType]) -> ComplianceResult:
    requirements = requirements_for(category)
    missing = tuple(doc for doc in _DOCUMENT_ORDER if doc in requirements.required and doc not in approved)
    return ComplianceResult(
        vendor_id=vendor_id,
        category=category,
        risk_tier=requirements.risk_tier,
        compliant=not missing,
        missing_requirements=missing,
    )


def check_compliance(
    db: Session, vendor_id: str, category: str, *, now: datetime | None = None
) -> ComplianceResult:
    """Compare the vendor's approved documents with the category requirements."""

    result = evaluate(vendor_id, category, approved_document_types(db, vendor_id, now=now))
    if not result.compliant:
        logger.info(
            "Vendor not compliant for payout",
            extra={
                "vendor_id": vendor_id,
                "category": category,
                "missing": [doc.value for doc in result.missing_requirements],
            },
        )
    return result


__all__ = [
    "RiskTier",
    "CategoryRequirements",
    "CATEGORY_REQUIREMENTS",
    "RISK_TIER_REQUIREMENTS",
    "ComplianceResult",
    "requirements_for",
    "approved_document_types",
    "evaluate",
    "check_compliance",
]
