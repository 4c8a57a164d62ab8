"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin
from .enrichment_job import EnrichmentJob
from .integration import IntegrationUsageLog, SiteIntegration
from .keyword import TrackedKeyword
from .keyword_bank import KeywordBankEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "KeywordBankEntry",
    "EnrichmentJob",
    "SiteIntegration",
    "IntegrationUsageLog",
    "TrackedKeyword",
]
