from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ScrapeStrategy = Literal["full", "incremental"]

SWISS_CANTONS = (
    "AG", "AI", "AR", "BE", "BL", "BS", "FR", "GE", "GL", "GR",
    "JU", "LU", "NE", "NW", "OW", "SG", "SH", "SO", "SZ", "TG",
    "TI", "UR", "VD", "VS", "ZG", "ZH",
)  # fmt: skip

DEFAULT_WORKLOAD_MIN = 10
DEFAULT_WORKLOAD_MAX = 100
DEFAULT_ONLINE_SINCE_DAYS = 60


def is_valid_canton(code: str) -> bool:
    return code.strip().upper() in SWISS_CANTONS


class ScrapeRequest(BaseModel):
    """Filter set and paging options for one ingestion run."""

    strategy: ScrapeStrategy = "full"
    max_pages: int = Field(default=5, ge=0)
    start_page: int = Field(default=0, ge=0)
    keywords: str = ""
    cantons: list[str] = Field(default_factory=list)
    workload_min: int = 10
    workload_max: int = 100
    permanent: bool | None = None
    days_back: int = 60
    polite: bool = True

    @field_validator("cantons")
    @classmethod
    def _normalize_cantons(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for item in value:
            code = item.strip().upper()
            if not code:
                continue
            if code not in SWISS_CANTONS:
                raise ValueError(f"unknown canton code: {item}")
            if code not in normalized:
                normalized.append(code)
        return normalized

    def to_filters_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def build_search_body(self) -> dict[str, Any]:
        workload_min = self.workload_min if self.workload_min > 0 else DEFAULT_WORKLOAD_MIN
        workload_max = self.workload_max
        if workload_max <= 0 or workload_max > 100:
            workload_max = DEFAULT_WORKLOAD_MAX
        online_since = self.days_back if self.days_back > 0 else DEFAULT_ONLINE_SINCE_DAYS

        return {
            "workloadPercentageMin": workload_min,
            "workloadPercentageMax": workload_max,
            "permanent": self.permanent,
            "companyName": None,
            "onlineSince": online_since,
            "displayRestricted": False,
            "professionCodes": [],
            "keywords": self.keywords.split(),
            "communalCodes": [],
            "cantonCodes": list(self.cantons),
        }
