from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlencode

from ..errors import DataError, ExhaustionError
from ..models import Campaign, Candidate, SourceType
from ..pipelines.content_fetch import ContentFetcher, FetchOptions
from ..services.key_service import KeyStore
from ..utils import log_event, to_iso, truncate_text

API_BASE = "https://www.googleapis.com/youtube/v3"
_SKIPPED_TITLES = {"private video", "deleted video"}
_THUMBNAIL_ORDER = ("maxres", "standard", "high", "medium", "default")


class YouTubeDiscoverer:
    """Recent uploads of a channel, or the items of a playlist."""

    source_type = SourceType.YOUTUBE

    def __init__(
        self,
        fetcher: ContentFetcher,
        key_store: KeyStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.key_store = key_store
        self.logger = logger or logging.getLogger("autopress.discovery.youtube")

    def discover(self, campaign: Campaign, source: dict[str, Any]) -> list[Candidate]:
        channel_id = str(source.get("channel_id") or "").strip()
        playlist_id = str(source.get("playlist_id") or "").strip()
        if not channel_id and not playlist_id:
            raise DataError("missing_source_id", "youtube source needs channel_id or playlist_id")
        api_key = self._api_key()
        if not playlist_id:
            playlist_id = self._uploads_playlist(channel_id, api_key)
        max_results = max(1, min(50, int(source.get("max_results") or 20)))
        data = self._get(
            "playlistItems",
            {"part": "snippet,contentDetails", "playlistId": playlist_id, "maxResults": max_results},
            api_key,
        )
        candidates = []
        for item in data.get("items") or []:
            candidate = _item_to_candidate(item)
            if candidate is not None:
                candidates.append(candidate)
        log_event(
            self.logger,
            logging.INFO,
            "youtube_playlist_read",
            campaign_id=campaign.id,
            playlist_id=playlist_id,
            candidates=len(candidates),
        )
        return candidates

    def _api_key(self) -> str:
        for key in self.key_store.eligible_keys("youtube"):
            if self.key_store.reserve(key.id):
                return self.key_store.load_secret(key.id)
        raise ExhaustionError("no_keys_available", "no usable youtube api key")

    def _uploads_playlist(self, channel_id: str, api_key: str) -> str:
        data = self._get("channels", {"part": "contentDetails", "id": channel_id}, api_key)
        items = data.get("items") or []
        if not items:
            raise DataError("channel_not_found", f"youtube channel {channel_id} not found")
        uploads = (
            (items[0].get("contentDetails") or {}).get("relatedPlaylists") or {}
        ).get("uploads")
        if not uploads:
            raise DataError("channel_without_uploads", f"youtube channel {channel_id} has no uploads playlist")
        return uploads

    def _get(self, resource: str, params: dict[str, Any], api_key: str) -> dict[str, Any]:
        result = self.fetcher.fetch(
            f"{API_BASE}/{resource}?{urlencode(params)}",
            FetchOptions(use_cache=False, headers={"X-Goog-Api-Key": api_key, "Accept": "application/json"}),
        )
        if not isinstance(result.data, dict):
            raise DataError("provider_error", f"youtube {resource} returned no object")
        if result.data.get("error"):
            error = result.data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise DataError("provider_error", f"youtube: {message}")
        return result.data


def _item_to_candidate(item: dict[str, Any]) -> Candidate | None:
    snippet = item.get("snippet") or {}
    details = item.get("contentDetails") or {}
    title = (snippet.get("title") or "").strip()
    if not title or title.lower() in _SKIPPED_TITLES:
        return None
    video_id = details.get("videoId") or (snippet.get("resourceId") or {}).get("videoId")
    if not video_id:
        return None
    thumbnails = snippet.get("thumbnails") or {}
    image_url = None
    for size in _THUMBNAIL_ORDER:
        if (thumbnails.get(size) or {}).get("url"):
            image_url = thumbnails[size]["url"]
            break
    description = snippet.get("description") or ""
    return Candidate(
        url=f"https://www.youtube.com/watch?v={video_id}",
        title=title,
        excerpt=truncate_text(description, 500),
        published_at=to_iso(details.get("videoPublishedAt") or snippet.get("publishedAt")),
        author=snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle"),
        image_url=image_url,
        source_name=snippet.get("channelTitle"),
        extra={"video_id": video_id, "description": description},
    )
