# Interfaces (Abstract Contracts)
# Adapters implement these interfaces
from .repositories import KeywordRecordRepository
from .services import KeywordDataProvider

__all__ = [
    "KeywordRecordRepository",
    "KeywordDataProvider",
]
