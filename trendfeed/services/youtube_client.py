from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, cast

import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from trendfeed.errors import (
    PlatformApiError,
    PlatformAuthError,
    PlatformError,
    PlatformQuotaExceededError,
)

LOGGER = logging.getLogger("trendfeed.youtube")

# YouTube reports exhausted project quota as 403 with one of these reasons.
_QUOTA_REASONS: frozenset[str] = frozenset(
    {"quotaExceeded", "dailyLimitExceeded", "rateLimitExceeded", "userRateLimitExceeded"}
)

ClientFactory = Callable[[str], Any]


class YouTubeClient:
    """Thin blocking wrapper over the YouTube Data API v3 resources we call.

    A fresh discovery client is built per call because `httplib2.Http` is not
    safe to share between threads. Tests inject `client_factory` to return a
    fake with the same `resource().list(**kwargs).execute()` chain.
    """

    def __init__(
        self,
        *,
        http_timeout_seconds: float = 15.0,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._http_timeout_seconds = http_timeout_seconds
        self._client_factory = client_factory or self._build_client

    def list_channels(
        self,
        api_key: str,
        *,
        ids: list[str] | None = None,
        handle: str | None = None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {
            "part": "snippet,statistics,contentDetails",
            "maxResults": 50,
        }
        if ids is not None:
            query["id"] = ",".join(ids)
        elif handle is not None:
            query["forHandle"] = handle
        else:
            raise ValueError("channels.list needs ids or a handle")
        return self._execute(
            "channels.list",
            lambda client: client.channels().list(**query).execute(),
            api_key,
        )

    def list_playlist_items(
        self,
        api_key: str,
        *,
        playlist_id: str,
        max_results: int,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {
            "part": "snippet,contentDetails",
            "playlistId": playlist_id,
            "maxResults": max_results,
        }
        if page_token:
            query["pageToken"] = page_token
        return self._execute(
            "playlistItems.list",
            lambda client: client.playlistItems().list(**query).execute(),
            api_key,
        )

    def list_videos(self, api_key: str, *, ids: list[str]) -> dict[str, Any]:
        query: dict[str, Any] = {
            "part": "snippet,statistics,contentDetails",
            "id": ",".join(ids),
            "maxResults": 50,
        }
        return self._execute(
            "videos.list",
            lambda client: client.videos().list(**query).execute(),
            api_key,
        )

    def search_videos(self, api_key: str, *, query: dict[str, Any]) -> dict[str, Any]:
        search_query: dict[str, Any] = {
            "part": "id",
            "type": "video",
            "order": "viewCount",
            "maxResults": 50,
            **query,
        }
        return self._execute(
            "search.list",
            lambda client: client.search().list(**search_query).execute(),
            api_key,
        )

    def _execute(
        self,
        endpoint: str,
        request: Callable[[Any], Any],
        api_key: str,
    ) -> dict[str, Any]:
        try:
            client = self._client_factory(api_key)
            response = request(client)
        except HttpError as exc:
            raise _map_http_error(endpoint, exc) from exc
        except PlatformError:
            raise
        except (httplib2.HttpLib2Error, OSError, TimeoutError) as exc:
            LOGGER.warning("youtube transport failure endpoint=%s", endpoint, exc_info=True)
            raise PlatformApiError(f"{endpoint} transport failure: {exc}") from exc

        if not isinstance(response, dict):
            raise PlatformApiError(f"{endpoint} returned a non-object payload")
        return cast(dict[str, Any], response)

    def _build_client(self, api_key: str) -> Any:
        return build(
            "youtube",
            "v3",
            developerKey=api_key,
            cache_discovery=False,
            http=httplib2.Http(timeout=self._http_timeout_seconds),
        )


def _map_http_error(endpoint: str, exc: HttpError) -> PlatformError:
    status = int(getattr(exc.resp, "status", 0) or 0)
    reason, message = _http_error_details(exc)
    detail = f"{endpoint} failed with HTTP {status}: {message or reason or 'no detail'}"
    LOGGER.warning(
        "youtube api error endpoint=%s status=%s reason=%s",
        endpoint,
        status,
        reason,
    )
    if status == 429 or (status == 403 and reason in _QUOTA_REASONS):
        return PlatformQuotaExceededError(detail, http_status=status, reason=reason)
    if status in (401, 403):
        return PlatformAuthError(detail, http_status=status, reason=reason)
    return PlatformApiError(detail, http_status=status, reason=reason)


def _http_error_details(exc: HttpError) -> tuple[str | None, str | None]:
    content = exc.content
    raw_text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else ""
    try:
        payload = json.loads(raw_text) if raw_text else {}
    except json.JSONDecodeError:
        return None, raw_text.strip() or None

    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return None, None
    message = error.get("message") if isinstance(error.get("message"), str) else None
    reason: str | None = None
    errors = error.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        raw_reason = errors[0].get("reason")
        reason = raw_reason if isinstance(raw_reason, str) else None
    return reason, message
