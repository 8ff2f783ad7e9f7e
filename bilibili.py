"""Thin client for the public Bilibili web API."""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests  # pylint: disable=import-error
from yt_dlp import YoutubeDL  # pylint: disable=import-error
from yt_dlp.utils import YoutubeDLError  # pylint: disable=import-error

from errors import ResolutionError, UpstreamError

logger = logging.getLogger(__name__)

API_BASE = "https://api.bilibili.com"
REQUEST_TIMEOUT_SECONDS = 10
PAGE_SIZE = 20

BILI_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36"
    ),
    "Referer": "https://www.bilibili.com",
}

TITLE_PROBE_OPTIONS = {
    "quiet": True,
    "skip_download": True,
    "extract_flat": True,
    "noplaylist": True,
    "cachedir": False,
    "socket_timeout": 10,
    "retries": 1,
    "extractor_retries": 0,
}

ZONES = [
    ("Animation", 1), ("Bangumi", 13), ("Guochuang", 167), ("Music", 3),
    ("Dance", 129), ("Games", 4), ("Knowledge", 36), ("Tech", 188),
    ("Sports", 234), ("Cars", 223), ("Life", 160), ("Food", 211),
    ("Animals", 217), ("Kichiku", 119), ("Fashion", 155), ("News", 202),
    ("Entertainment", 5), ("Film & TV", 181), ("Documentary", 177),
    ("Movies", 23), ("TV Series", 11),
]


def probe_title(url: str) -> Optional[str]:
    """Return the title yt-dlp reports for ``url`` without downloading."""

    try:
        with YoutubeDL(TITLE_PROBE_OPTIONS.copy()) as downloader:
            info = downloader.extract_info(url, download=False)
    except YoutubeDLError as exc:
        logger.warning("yt-dlp could not read a title for %s: %s", url, exc)
        return None
    if not isinstance(info, dict):
        return None
    title = str(info.get("title") or "").strip()
    return title or None


class BilibiliClient:
    """Fetch listings and metadata from ``api.bilibili.com``.

    Listing helpers degrade to empty results when the API fails so the pages
    stay usable; lookups that a job depends on raise instead.
    """

    def __init__(self, sessdata: str = "", session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()
        self.session.headers.update(BILI_HEADERS)
        if sessdata:
            self.session.cookies.set("SESSDATA", sessdata, domain=".bilibili.com")

    def _get(self, path: str, params: Dict[str, Any], payload_key: str = "data") -> Any:
        url = f"{API_BASE}{path}"
        try:
            response = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT_SECONDS)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise UpstreamError(f"Bilibili API request failed: {exc}") from exc
        if not isinstance(body, dict):
            raise UpstreamError("Bilibili API returned an unexpected payload.")
        if body.get("code") != 0:
            message = body.get("message") or body.get("code")
            raise UpstreamError(f"Bilibili API error: {message}")
        return body.get(payload_key)

    def popular(self, page: int = 1) -> Dict[str, Any]:
        try:
            data = self._get("/x/web-interface/popular", {"ps": PAGE_SIZE, "pn": page})
        except UpstreamError as exc:
            logger.error("Failed to load popular videos (page %s): %s", page, exc)
            return {"list": [], "no_more": True}
        return data or {"list": [], "no_more": True}

    def category(self, rid: int, page: int = 1) -> Dict[str, Any]:
        try:
            data = self._get(
                "/x/web-interface/dynamic/region", {"rid": rid, "pn": page, "ps": PAGE_SIZE}
            )
        except UpstreamError as exc:
            logger.error("Failed to load zone %s (page %s): %s", rid, page, exc)
            return {"archives": [], "page": {"count": 0, "num": page, "size": PAGE_SIZE}}
        return data or {"archives": [], "page": {"count": 0, "num": page, "size": PAGE_SIZE}}

    def search(self, keyword: str, page: int = 1) -> Dict[str, Any]:
        try:
            data = self._get(
                "/x/web-interface/search/type",
                {"search_type": "video", "keyword": keyword, "page": page},
            )
        except UpstreamError as exc:
            logger.error("Search for %r failed: %s", keyword, exc)
            return {"result": [], "numPages": 0}
        return data or {"result": [], "numPages": 0}

    def timeline(self) -> List[Dict[str, Any]]:
        try:
            data = self._get(
                "/pgc/web/timeline", {"types": 1, "before": 3, "after": 3}, payload_key="result"
            )
        except UpstreamError as exc:
            logger.error("Failed to load the bangumi timeline: %s", exc)
            return []
        return data if isinstance(data, list) else []

    def video_details(self, video_id: str) -> Dict[str, Any]:
        """Return ``/x/web-interface/view`` data for a BV or av id."""

        if video_id.lower().startswith("bv"):
            params = {"bvid": video_id}
        else:
            params = {"aid": video_id[2:] if video_id.lower().startswith("av") else video_id}
        data = self._get("/x/web-interface/view", params)
        if not isinstance(data, dict):
            raise UpstreamError(f"No details returned for {video_id}.")
        return data

    def season_details(self, episode_id: Optional[str] = None, season_id: Optional[str] = None) -> Dict[str, Any]:
        if episode_id:
            params = {"ep_id": episode_id}
        elif season_id:
            params = {"season_id": season_id}
        else:
            raise ValueError("An episode or season id is required.")
        data = self._get("/pgc/view/web/season", params, payload_key="result")
        if not isinstance(data, dict):
            raise UpstreamError("No bangumi details returned.")
        return data

    def episode_streams(self, episode_id: str, cid: str) -> Tuple[str, ...]:
        """Return the remote stream URLs for one bangumi episode.

        Two URLs (video, audio) for DASH payloads, one for a muxed DURL stream.
        """

        try:
            data = self._get(
                "/pgc/player/web/playurl",
                {"ep_id": episode_id, "cid": cid, "qn": 16, "fnval": 0},
                payload_key="result",
            )
        except UpstreamError as exc:
            raise ResolutionError(
                f"Could not resolve the episode stream (a SESSDATA cookie may be required): {exc.message}"
            ) from exc
        if not isinstance(data, dict):
            raise ResolutionError("The episode stream response was empty.")

        dash = data.get("dash") or {}
        videos, audios = dash.get("video") or [], dash.get("audio") or []
        if videos and audios:
            video_url = videos[0].get("baseUrl") or videos[0].get("base_url")
            audio_url = audios[0].get("baseUrl") or audios[0].get("base_url")
            if video_url and audio_url:
                return (video_url, audio_url)
        durl = data.get("durl") or []
        if durl and durl[0].get("url"):
            return (durl[0]["url"],)
        raise ResolutionError("No DASH or DURL stream found for the episode.")

    def resolve_short_link(self, url: str) -> str:
        """Follow a b23.tv redirect and return the target URL."""

        target = url if "://" in url else f"https://{url}"
        try:
            response = self.session.head(target, allow_redirects=True, timeout=REQUEST_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            raise UpstreamError(f"Could not expand short link {url}: {exc}") from exc
        return response.url

    def lookup_title(self, video_id: str) -> Optional[str]:
        """Return the title of a BV/av video, or None when the API refuses."""

        try:
            details = self.video_details(video_id)
        except UpstreamError as exc:
            logger.warning("Could not fetch the title of %s: %s", video_id, exc)
            return None
        return str(details.get("title") or "").strip() or None
