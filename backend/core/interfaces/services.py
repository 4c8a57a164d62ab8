"""Service interfaces for external integrations."""

from abc import ABC, abstractmethod
from typing import Any


class KeywordDataProvider(ABC):
    """Abstract metered source of keyword intelligence."""

    @abstractmethod
    async def fetch_keyword_data(self, keywords: list[str], country_code: str) -> list[Any]:
        """Fetch metrics for up to 100 keywords in one call."""
        ...

    @abstractmethod
    async def test_connection(self) -> dict[str, Any]:
        """Check the provider and report health."""
        ...
