"""Pydantic models mirroring the job-room.ch job advertisement payload.

The upstream speaks camelCase JSON; every model accepts both the upstream
aliases and the snake_case field names. Values the upstream sends as loosely
typed strings (workload percentages, coordinates, dates) are kept verbatim here
and converted with the ``parse_*`` helpers at persistence time, so the raw
snapshot and the normalized columns never disagree about what was received.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class UpstreamModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class JobDescription(UpstreamModel):
    language_iso_code: str
    title: str = ""
    description: str | None = None


class Company(UpstreamModel):
    name: str | None = None
    street: str | None = None
    house_number: str | None = None
    postal_code: str | None = None
    city: str | None = None
    country_iso_code: str | None = None
    phone: str | None = None
    email: str | None = None
    website: str | None = None
    surrogate: bool = False

    @property
    def unique_key(self) -> tuple[str, str, str]:
        return (self.name or "", self.postal_code or "", self.city or "")


class Employment(UpstreamModel):
    start_date: str | None = None
    end_date: str | None = None
    short_employment: bool = False
    immediately: bool = False
    permanent: bool = False
    workload_percentage_min: str | int | None = None
    workload_percentage_max: str | int | None = None


class Coordinates(UpstreamModel):
    lat: str | float | None = None
    lon: str | float | None = None


class Location(UpstreamModel):
    remarks: str | None = None
    city: str | None = None
    postal_code: str | None = None
    communal_code: str | None = None
    region_code: str | None = None
    canton_code: str | None = None
    country_iso_code: str | None = None
    coordinates: Coordinates = Field(default_factory=Coordinates)

    @field_validator("coordinates", mode="before")
    @classmethod
    def _null_coordinates(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def unique_key(self) -> tuple[str, str, str]:
        return (self.postal_code or "", self.city or "", self.canton_code or "")


class Occupation(UpstreamModel):
    avam_occupation_code: str | None = None
    work_experience: str | None = None
    education_code: str | None = None
    qualification_code: str | None = None


class ApplyChannel(UpstreamModel):
    raw_post_address: str | None = None
    post_address: str | None = None
    email_address: str | None = None
    phone_number: str | None = None
    form_url: str | None = None
    additional_info: str | None = None


class Publication(UpstreamModel):
    start_date: str | None = None
    end_date: str | None = None
    eures_display: bool = False
    public_display: bool = True
    restricted_display: bool | None = None
    company_anonymous: bool | None = None


class JobContent(UpstreamModel):
    external_url: str | None = None
    number_of_jobs: str | int | None = None
    job_descriptions: list[JobDescription] = Field(default_factory=list)
    company: Company = Field(default_factory=Company)
    employment: Employment = Field(default_factory=Employment)
    location: Location = Field(default_factory=Location)
    occupations: list[Occupation] = Field(default_factory=list)
    apply_channel: ApplyChannel = Field(default_factory=ApplyChannel)

    @field_validator("job_descriptions", "occupations", mode="before")
    @classmethod
    def _null_list_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("company", "employment", "location", "apply_channel", mode="before")
    @classmethod
    def _null_object_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class JobSummary(UpstreamModel):
    """Lightweight view of one search hit; enough for the cutoff decision."""

    id: str
    created_time: datetime | None = None
    updated_time: datetime | None = None
    status: str | None = None

    @field_validator("created_time", "updated_time")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class JobDetail(JobSummary):
    source_system: str | None = None
    external_reference: str | None = None
    stellennummer_egov: str | None = None
    fingerprint: str | None = None
    reporting_obligation: bool = False
    job_content: JobContent = Field(default_factory=JobContent)
    publication: Publication = Field(default_factory=Publication)
    raw_data: str | None = Field(default=None, exclude=True)

    @field_validator("job_content", "publication", mode="before")
    @classmethod
    def _null_object_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    candidate = value.strip()
    if not candidate:
        return None
    try:
        return date.fromisoformat(candidate[:10])
    except ValueError:
        return None


def parse_workload(value: str | int | None) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    candidate = value.strip()
    if not candidate:
        return None
    try:
        return int(float(candidate))
    except ValueError:
        return None


def parse_coordinate(value: str | float | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, float):
        return value
    candidate = value.strip()
    if not candidate:
        return None
    try:
        return float(candidate)
    except ValueError:
        return None


def parse_positions(value: str | int | None) -> int | None:
    parsed = parse_workload(value)
    if parsed is None or parsed < 1:
        return None
    return parsed
