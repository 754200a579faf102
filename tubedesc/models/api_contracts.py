from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VARIABLE_NAME_PATTERN = re.compile(r"[A-Za-z0-9_]+")


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class AuthorizeUrlResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str


class ChannelConnectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1, max_length=4096)


class ChannelResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    channel_id: str
    title: str | None
    thumbnail_url: str | None
    subscriber_count: int
    token_status: str
    sync_status: str
    last_synced_at: datetime | None
    reconnect_required: bool


class ChannelConnectResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel: ChannelResponse
    sync_job_id: str


class JobEnqueuedResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str | None
    job_ids: list[str] = Field(default_factory=list)
    video_count: int = 0


class JobResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    job_type: str
    status: str
    attempts: int
    next_run_at: datetime
    last_error: str | None
    result: dict[str, Any] | None


class VideosUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_ids: list[str] = Field(min_length=1, max_length=10000)


class VideoPreviewResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    remote_video_id: str
    container_id: str | None
    template_ids: list[str]
    description: str | None
    current_description: str | None
    changed: bool
    length: int
    exceeds_limit: bool


class HistoryVersion(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version_number: int
    description: str
    created_by: str | None
    created_at: datetime | None


class VideoAssignRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    container_id: str = Field(min_length=1, max_length=120)


class VideoAssignResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    container_id: str
    update_job_id: str | None


class VideoHistoryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    versions: list[HistoryVersion]


class VariableBinding(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=1, max_length=120)
    value: str = Field(max_length=5000)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not _VARIABLE_NAME_PATTERN.fullmatch(value):
            raise ValueError("variable names may only contain letters, digits and underscores")
        return value


class VideoVariablesRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    variables: list[VariableBinding] = Field(min_length=1, max_length=500)


class TemplatePreviewRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    templates: list[str] = Field(max_length=100)
    separator: str = "\n\n"
    variables: dict[str, str] = Field(default_factory=dict)
    video_id: str = ""


class TemplatePreviewResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str
    variables: list[str]
    length: int
    exceeds_limit: bool


class TemplateImpactContainer(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    video_count: int


class TemplateImpactResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template_id: str
    containers: list[TemplateImpactContainer]
    video_ids: list[str]
    count: int


class TemplateCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    content: str = Field(default="", max_length=20000)

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class TemplateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    content: str
    variables: list[str]


class TemplateUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=200)
    content: str | None = Field(default=None, max_length=20000)

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class TemplateUpdateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    content: str
    variables: list[str]
    update_job_id: str | None
    update_job_ids: list[str] = Field(default_factory=list)
    affected_videos: int


class ContainerCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    separator: str = Field(default="\n\n", max_length=200)
    template_order: list[str] = Field(default_factory=list, max_length=100)

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class ContainerResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    separator: str
    template_order: list[str]


class ContainerUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    separator: str | None = Field(default=None, max_length=200)
    template_order: list[str] | None = Field(default=None, max_length=100)


class ContainerUpdateResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    separator: str
    template_order: list[str]
    update_job_id: str | None
    update_job_ids: list[str] = Field(default_factory=list)
    affected_videos: int
