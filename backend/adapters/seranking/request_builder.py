"""Request construction and response coercion for the keyword export endpoint."""

import re
from dataclasses import dataclass, field
from typing import Any

from .errors import SeRankingInvalidRequestError, SeRankingParsingError

EXPORT_PATH = "/v1/keywords/export"
MAX_KEYWORDS_PER_REQUEST = 100
MAX_KEYWORD_LENGTH = 100
EXPORT_COLUMNS = ("keyword", "volume", "cpc", "competition", "difficulty", "history_trend")

_COUNTRY_CODE_RE = re.compile(r"^[a-z]{2,3}$")


@dataclass
class KeywordData:
    """One keyword's metrics as returned by the export endpoint."""

    keyword: str
    is_data_found: bool
    volume: int | None = None
    cpc: float | None = None
    competition: float | None = None
    difficulty: int | None = None
    history_trend: dict[str, Any] | None = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "KeywordData":
        """Coerce one raw export item into typed fields."""
        return cls(
            keyword=str(data.get("keyword") or ""),
            is_data_found=bool(data.get("is_data_found")),
            volume=_as_int(data.get("volume")),
            cpc=_as_float(data.get("cpc")),
            competition=_as_float(data.get("competition")),
            difficulty=_as_int(data.get("difficulty")),
            history_trend=data.get("history_trend") if isinstance(data.get("history_trend"), dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "keyword": self.keyword,
            "is_data_found": self.is_data_found,
            "volume": self.volume,
            "cpc": self.cpc,
            "competition": self.competition,
            "difficulty": self.difficulty,
            "history_trend": self.history_trend,
        }


@dataclass
class ExportRequest:
    """A ready-to-send keyword export call."""

    path: str
    params: dict[str, str]
    data: dict[str, Any] = field(default_factory=dict)


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> int | None:
    number = _as_float(value)
    return int(round(number)) if number is not None else None


def validate_keywords(keywords: list[str]) -> list[str]:
    """
    Validate a keyword batch for a single export call.

    Returns:
        Keywords with surrounding whitespace removed

    Raises:
        SeRankingInvalidRequestError: Empty batch, oversized batch, or a bad keyword
    """
    if not keywords:
        raise SeRankingInvalidRequestError("At least one keyword is required")
    if len(keywords) > MAX_KEYWORDS_PER_REQUEST:
        raise SeRankingInvalidRequestError(
            f"Too many keywords: {len(keywords)} (max {MAX_KEYWORDS_PER_REQUEST} per request)"
        )

    cleaned = []
    for keyword in keywords:
        if not isinstance(keyword, str) or not keyword.strip():
            raise SeRankingInvalidRequestError("Keywords must be non-empty strings")
        keyword = keyword.strip()
        if len(keyword) > MAX_KEYWORD_LENGTH:
            raise SeRankingInvalidRequestError(
                f"Keyword exceeds {MAX_KEYWORD_LENGTH} characters: {keyword[:20]}..."
            )
        cleaned.append(keyword)
    return cleaned


def validate_country_code(country_code: str) -> str:
    """Lowercase and validate a 2-3 letter country code."""
    code = (country_code or "").strip().lower()
    if not _COUNTRY_CODE_RE.match(code):
        raise SeRankingInvalidRequestError(f"Invalid country code: {country_code!r}")
    return code


def build_export_request(keywords: list[str], country_code: str) -> ExportRequest:
    """Build the form-encoded export request for one batch."""
    cleaned = validate_keywords(keywords)
    source = validate_country_code(country_code)
    return ExportRequest(
        path=EXPORT_PATH,
        params={"source": source},
        data={
            "keywords[]": cleaned,
            "sort": "cpc",
            "sort_order": "desc",
            "cols": ",".join(EXPORT_COLUMNS),
        },
    )


def build_headers(api_key: str) -> dict[str, str]:
    return {
        "Authorization": f"Token {api_key}",
        "Accept": "application/json",
    }


def parse_keyword_response(payload: Any) -> list[KeywordData]:
    """
    Coerce the export response into ``KeywordData`` items.

    Raises:
        SeRankingParsingError: Payload is not a list of objects
    """
    if not isinstance(payload, list):
        raise SeRankingParsingError(
            f"Expected a list of keyword results, got {type(payload).__name__}",
            details=payload if isinstance(payload, (dict, str)) else None,
        )

    results = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise SeRankingParsingError(f"Malformed keyword result at index {index}")
        results.append(KeywordData.from_api_response(item))
    return results
