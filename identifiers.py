"""Parse user supplied Bilibili identifiers and derive cache content keys."""

import hashlib
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlparse

from errors import ValidationError

KIND_UGC = "ugc"
KIND_PGC = "pgc"
KIND_SEASON = "season"
KIND_URL = "url"

CONTENT_KEY_PATTERN = re.compile(r"^[0-9a-f]{32}$")

_BV_PATTERN = re.compile(r"(BV[0-9A-Za-z]{10})", re.IGNORECASE)
_AV_URL_PATTERN = re.compile(r"/av(\d+)", re.IGNORECASE)
_EP_URL_PATTERN = re.compile(r"/ep(\d+)", re.IGNORECASE)
_SS_URL_PATTERN = re.compile(r"/ss(\d+)", re.IGNORECASE)
_SHORT_LINK_HOSTS = {"b23.tv", "www.b23.tv", "bili2233.cn"}


@dataclass(frozen=True)
class SourceRef:
    """A normalized reference to one piece of upstream content."""

    kind: str
    value: str
    page: Optional[int] = None

    def video_url(self) -> str:
        """Return the URL handed to yt-dlp for downloadable sources."""

        if self.kind == KIND_UGC:
            url = f"https://www.bilibili.com/video/{self.value}/"
            if self.page and self.page > 1:
                url += f"?p={self.page}"
            return url
        if self.kind == KIND_PGC:
            return f"https://www.bilibili.com/bangumi/play/ep{self.value}"
        if self.kind == KIND_SEASON:
            return f"https://www.bilibili.com/bangumi/play/ss{self.value}"
        return self.value

    def normalized(self) -> str:
        """Return the canonical string the content key is derived from."""

        if self.kind == KIND_PGC:
            return f"ep{self.value}"
        if self.kind == KIND_SEASON:
            raise ValidationError("A season id must be resolved to an episode before downloading.")
        return self.video_url()


def _canonical_video_id(raw: str) -> str:
    """Return ``BV...`` ids verbatim and ``av`` ids in lower-case prefixed form."""

    if raw.lower().startswith("bv"):
        return "BV" + raw[2:]
    if raw.lower().startswith("av"):
        return "av" + raw[2:]
    return f"av{raw}"


def _parse_page(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        page = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid part number '{value}'.") from exc
    if page < 1:
        raise ValidationError(f"Invalid part number '{value}'.")
    return page


def is_short_link(raw: str) -> bool:
    """Return True for b23.tv style short links that need a redirect lookup."""

    candidate = raw.strip()
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    host = (urlparse(candidate).hostname or "").lower()
    return host in _SHORT_LINK_HOSTS


def parse_identifier(raw: Optional[str], page: Optional[str] = None) -> SourceRef:
    """Parse a BV/av/ep/ss id or URL into a :class:`SourceRef`.

    ``page`` overrides any ``p`` query parameter found in a video URL.
    Short links must be expanded by the caller before parsing.
    """

    text = (raw or "").strip()
    if not text:
        raise ValidationError("No video id or URL was provided.")
    explicit_page = _parse_page(page)
    lowered = text.lower()

    if "://" not in text and "/" not in text:
        if re.fullmatch(r"ep\d+", lowered):
            return SourceRef(KIND_PGC, text[2:])
        if re.fullmatch(r"ss\d+", lowered):
            return SourceRef(KIND_SEASON, text[2:])
        if re.fullmatch(r"bv[0-9a-z]{10}", lowered):
            return SourceRef(KIND_UGC, _canonical_video_id(text), explicit_page)
        if re.fullmatch(r"(av)?\d+", lowered):
            return SourceRef(KIND_UGC, _canonical_video_id(text), explicit_page)
        raise ValidationError(f"Unrecognised video id '{text}'.")

    if not re.match(r"^https?://", lowered):
        text = f"https://{text}"
    parsed = urlparse(text)
    host = (parsed.hostname or "").lower()
    if not host:
        raise ValidationError(f"Unrecognised URL '{text}'.")

    if host == "bilibili.com" or host.endswith(".bilibili.com"):
        query_page = parse_qs(parsed.query).get("p", [None])[0]
        part = explicit_page or _parse_page(query_page)
        for pattern, kind in ((_EP_URL_PATTERN, KIND_PGC), (_SS_URL_PATTERN, KIND_SEASON)):
            match = pattern.search(parsed.path)
            if match:
                return SourceRef(kind, match.group(1))
        match = _BV_PATTERN.search(parsed.path)
        if match:
            return SourceRef(KIND_UGC, _canonical_video_id(match.group(1)), part)
        match = _AV_URL_PATTERN.search(parsed.path)
        if match:
            return SourceRef(KIND_UGC, f"av{match.group(1)}", part)
        raise ValidationError("No AV/BV/EP/SS id found in the Bilibili URL.")

    return SourceRef(KIND_URL, text)


def content_key(source: SourceRef) -> str:
    """Return the hex digest identifying ``source`` in the cache."""

    return hashlib.md5(source.normalized().encode("utf-8")).hexdigest()


def validate_content_key(key: Optional[str]) -> str:
    """Return ``key`` when it looks like a content key, else raise."""

    candidate = (key or "").strip().lower()
    if not CONTENT_KEY_PATTERN.match(candidate):
        raise ValidationError("Invalid job id.")
    return candidate
