from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class Thumbnail(_RemoteModel):
    url: str | None = None


class ChannelSnippet(_RemoteModel):
    title: str | None = None
    thumbnails: dict[str, Thumbnail] = Field(default_factory=dict)

    def best_thumbnail_url(self) -> str | None:
        for size in ("high", "medium", "default"):
            thumbnail = self.thumbnails.get(size)
            if thumbnail is not None and thumbnail.url:
                return thumbnail.url
        return None


class ChannelStatistics(_RemoteModel):
    subscriber_count: int | None = Field(default=None, alias="subscriberCount")

    @field_validator("subscriber_count", mode="before")
    @classmethod
    def _parse_count(cls, value: object) -> int | None:
        # The API reports counts as decimal strings.
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None


class RelatedPlaylists(_RemoteModel):
    uploads: str | None = None


class ChannelContentDetails(_RemoteModel):
    related_playlists: RelatedPlaylists = Field(
        default_factory=RelatedPlaylists,
        alias="relatedPlaylists",
    )


class ChannelResource(_RemoteModel):
    kind: Literal["youtube#channel"] = "youtube#channel"
    id: str
    snippet: ChannelSnippet = Field(default_factory=ChannelSnippet)
    statistics: ChannelStatistics = Field(default_factory=ChannelStatistics)
    content_details: ChannelContentDetails = Field(
        default_factory=ChannelContentDetails,
        alias="contentDetails",
    )


class ChannelListResponse(_RemoteModel):
    kind: Literal["youtube#channelListResponse"] = "youtube#channelListResponse"
    items: list[ChannelResource] = Field(default_factory=list)


class ResourceId(_RemoteModel):
    video_id: str | None = Field(default=None, alias="videoId")


class PlaylistItemSnippet(_RemoteModel):
    title: str | None = None
    description: str | None = None
    published_at: str | None = Field(default=None, alias="publishedAt")
    resource_id: ResourceId = Field(default_factory=ResourceId, alias="resourceId")


class PlaylistItemContentDetails(_RemoteModel):
    video_id: str | None = Field(default=None, alias="videoId")
    video_published_at: str | None = Field(default=None, alias="videoPublishedAt")


class PlaylistItem(_RemoteModel):
    kind: Literal["youtube#playlistItem"] = "youtube#playlistItem"
    snippet: PlaylistItemSnippet = Field(default_factory=PlaylistItemSnippet)
    content_details: PlaylistItemContentDetails = Field(
        default_factory=PlaylistItemContentDetails,
        alias="contentDetails",
    )

    @property
    def video_id(self) -> str | None:
        return self.content_details.video_id or self.snippet.resource_id.video_id


class PlaylistItemListResponse(_RemoteModel):
    kind: Literal["youtube#playlistItemListResponse"] = "youtube#playlistItemListResponse"
    items: list[PlaylistItem] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")

    @field_validator("next_page_token", mode="before")
    @classmethod
    def _blank_token_is_none(cls, value: object) -> str | None:
        if isinstance(value, str) and value.strip():
            return value
        return None


class VideoSnippet(_RemoteModel):
    title: str | None = None
    description: str | None = None
    published_at: str | None = Field(default=None, alias="publishedAt")
    category_id: str | None = Field(default=None, alias="categoryId")
    tags: list[str] | None = None
    default_language: str | None = Field(default=None, alias="defaultLanguage")


class VideoResource(_RemoteModel):
    kind: Literal["youtube#video"] = "youtube#video"
    id: str
    snippet: VideoSnippet = Field(default_factory=VideoSnippet)


class VideoListResponse(_RemoteModel):
    kind: Literal["youtube#videoListResponse"] = "youtube#videoListResponse"
    items: list[VideoResource] = Field(default_factory=list)
