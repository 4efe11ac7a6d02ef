"""Input data source: the viewer's liked videos and watch activity (YouTube Data API v3).

The caller's bearer token is forwarded as-is; obtaining it is not this
module's business.

Usage::

    async with FeedClient(access_token) as client:
        data = await client.fetch_input(liked=True, history=True, max_results=25)
        # {"likedItems": [...], "watchHistory": [...]}
"""

from __future__ import annotations

from typing import Any, Literal

import httpx

from lodestar.core.config import get_settings
from lodestar.core.logging import get_logger

logger = get_logger("sources.feed")

FeedKind = Literal["liked", "history"]

# The API never returns more than this many items per page.
_PAGE_SIZE = 50

_HISTORY_TYPES = ("watch", "playlistItem", "upload")


class FeedError(Exception):
    """The feed API could not be reached or rejected the request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _thumbnail(snippet: dict[str, Any]) -> str:
    thumbs = snippet.get("thumbnails") or {}
    return (thumbs.get("high") or thumbs.get("default") or {}).get("url", "")


def _liked_item(video: dict[str, Any]) -> dict[str, Any]:
    snippet = video.get("snippet") or {}
    stats = video.get("statistics") or {}
    return {
        "id": video.get("id", ""),
        "title": snippet.get("title", ""),
        "channelTitle": snippet.get("channelTitle", ""),
        "channelId": snippet.get("channelId", ""),
        "publishedAt": snippet.get("publishedAt", ""),
        "description": snippet.get("description", ""),
        "thumbnailUrl": _thumbnail(snippet),
        "duration": (video.get("contentDetails") or {}).get("duration", ""),
        "viewCount": stats.get("viewCount"),
        "likeCount": stats.get("likeCount"),
    }


def _history_item(activity: dict[str, Any]) -> dict[str, Any] | None:
    snippet = activity.get("snippet") or {}
    details = activity.get("contentDetails") or {}
    if snippet.get("type") not in _HISTORY_TYPES and "upload" not in details:
        return None

    video_id = None
    if "upload" in details:
        video_id = details["upload"].get("videoId")
    else:
        for key in ("playlistItem", "recommendation"):
            if key in details:
                video_id = (details[key].get("resourceId") or {}).get("videoId")
                break
    if not video_id:
        return None

    return {
        "id": activity.get("id", ""),
        "videoId": video_id,
        "title": snippet.get("title", ""),
        "channelTitle": snippet.get("channelTitle", ""),
        "channelId": snippet.get("channelId", ""),
        "watchedAt": snippet.get("publishedAt", ""),
        "thumbnailUrl": _thumbnail(snippet),
    }


class FeedClient:
    """Async client for the two feeds the pipeline consumes.

    Args:
        access_token: OAuth bearer token of the viewer.
        base_url:     API base URL.  Override in tests.
        timeout:      HTTP timeout in seconds.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.feed_api_base).rstrip("/")
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=timeout if timeout is not None else settings.feed_timeout_seconds,
        )

    async def __aenter__(self) -> "FeedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise FeedError(
                f"Feed GET {path} failed: {exc.response.status_code} {exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise FeedError(f"Feed GET {path} network error: {exc}") from exc

    async def liked_items(self, max_results: int = 50) -> list[dict[str, Any]]:
        """Liked videos, newest first, paging until *max_results* are collected.

        Raises:
            FeedError: on any HTTP failure.
        """
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        while len(items) < max_results:
            params: dict[str, Any] = {
                "part": "snippet,contentDetails,statistics",
                "myRating": "like",
                "maxResults": min(_PAGE_SIZE, max_results - len(items)),
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._get("/videos", params)
            items.extend(_liked_item(v) for v in data.get("items") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return items[:max_results]

    async def watch_history(self, max_results: int = 50) -> list[dict[str, Any]]:
        """Watch activity.  The activities feed is unreliable, so failures yield ``[]``."""
        items: list[dict[str, Any]] = []
        page_token: str | None = None
        try:
            while len(items) < max_results:
                params: dict[str, Any] = {
                    "part": "snippet,contentDetails",
                    "mine": "true",
                    "maxResults": min(_PAGE_SIZE, max_results - len(items)),
                }
                if page_token:
                    params["pageToken"] = page_token
                data = await self._get("/activities", params)
                for activity in data.get("items") or []:
                    item = _history_item(activity)
                    if item is not None:
                        items.append(item)
                page_token = data.get("nextPageToken")
                if not page_token:
                    break
        except FeedError as exc:
            logger.warning("Watch history unavailable, continuing without it: %s", exc)
            return []
        return items[:max_results]

    async def fetch_items(self, kind: FeedKind, max_results: int = 50) -> list[dict[str, Any]]:
        if kind == "liked":
            return await self.liked_items(max_results)
        if kind == "history":
            return await self.watch_history(max_results)
        raise ValueError(f"Unknown feed kind: {kind}")

    async def fetch_input(self, liked: bool = True, history: bool = False, max_results: int = 50) -> dict[str, Any]:
        """Build the pipeline input mapping for the requested kinds."""
        data: dict[str, Any] = {}
        if liked:
            data["likedItems"] = await self.liked_items(max_results)
        if history:
            data["watchHistory"] = await self.watch_history(max_results)
        logger.info(
            "Fetched %d liked item(s), %d history item(s)",
            len(data.get("likedItems", [])), len(data.get("watchHistory", [])),
        )
        return data
