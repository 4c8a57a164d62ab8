"""Keyword record entity supplied by the surrounding application."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class KeywordRecord:
    """A tracked keyword awaiting or holding a keyword bank linkage."""

    id: str
    owner_id: str
    keyword: str
    country_code: str  # ISO2, lowercase
    keyword_bank_id: Optional[str] = None
    intelligence_updated_at: Optional[datetime] = None
