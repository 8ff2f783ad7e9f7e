"""Configuration loading for the streamer."""

import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_BASE = os.environ.get("BBBILI_CONFIG_DIR", os.path.dirname(os.path.abspath(__file__)))
CONFIG_FILENAME = "config.json"

_INT_LIMITS = {
    "port": (1, 65535),
    "max_height": (144, 2160),
    "socket_timeout": (1, 600),
    "retries": (0, 100),
    "frame_width": (16, 1920),
    "frame_height": (16, 1080),
    "video_crf": (0, 51),
    "audio_rate": (8000, 96000),
    "max_concurrent_jobs": (0, 64),
    "tool_timeout": (0, 86400),
    "poll_interval": (1, 60),
}

_CACHE: Dict[str, Dict[str, Any]] = {}


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _default_config(base_dir: str) -> Dict[str, Any]:
    return {
        "cache_dir": os.environ.get("BBBILI_CACHE_DIR") or os.path.join(base_dir, "cache"),
        "host": os.environ.get("BBBILI_HOST") or "0.0.0.0",
        "port": os.environ.get("BBBILI_PORT") or 3000,
        "ytdlp_path": os.environ.get("BBBILI_YTDLP") or "yt-dlp",
        "ffmpeg_path": os.environ.get("BBBILI_FFMPEG") or "ffmpeg",
        "max_height": 360,
        "socket_timeout": 30,
        "retries": 5,
        "frame_width": 320,
        "frame_height": 240,
        "video_crf": 28,
        "audio_bitrate": "96k",
        "audio_rate": 44100,
        "max_concurrent_jobs": 2,
        "tool_timeout": 0,
        "poll_interval": 3,
        "sessdata": os.environ.get("BBBILI_SESSDATA") or "",
        "cookie_file": os.environ.get("BBBILI_COOKIE_FILE") or "",
        "debug_mode": _env_flag("BBBILI_DEBUG"),
    }


def _coerce_int(value: Any, default: int, limits: Optional[tuple] = None) -> int:
    """Return ``value`` as an int, falling back to ``default`` when invalid."""

    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if limits is not None:
        lower, upper = limits
        number = max(lower, min(number, upper))
    return number


def normalize_config(raw_config: Optional[Dict[str, Any]], base_dir: str = CONFIG_BASE) -> Dict[str, Any]:
    """Merge a raw configuration dictionary with defaults and sanitize values."""

    defaults = _default_config(base_dir)
    merged = dict(defaults)
    if isinstance(raw_config, dict):
        merged.update({key: value for key, value in raw_config.items() if value is not None})

    for key, limits in _INT_LIMITS.items():
        merged[key] = _coerce_int(merged.get(key), _coerce_int(defaults[key], 0), limits)

    cache_dir = str(merged.get("cache_dir") or "").strip() or defaults["cache_dir"]
    merged["cache_dir"] = os.path.abspath(os.path.expanduser(cache_dir))

    for key in ("host", "ytdlp_path", "ffmpeg_path", "audio_bitrate"):
        merged[key] = str(merged.get(key) or "").strip() or defaults[key]

    merged["sessdata"] = str(merged.get("sessdata") or "").strip()
    cookie_file = str(merged.get("cookie_file") or "").strip()
    if cookie_file and not os.path.isabs(cookie_file):
        cookie_file = os.path.join(base_dir, cookie_file)
    merged["cookie_file"] = cookie_file
    merged["debug_mode"] = bool(merged.get("debug_mode"))
    return merged


def load_config(base_dir: Optional[str] = None, *, reload: bool = False) -> Dict[str, Any]:
    """Load configuration from ``config.json`` or environment defaults."""

    directory = base_dir or CONFIG_BASE
    cached = _CACHE.get(directory)
    if cached is not None and not reload:
        return cached

    config_path = os.path.join(directory, CONFIG_FILENAME)
    config_data: Optional[Dict[str, Any]] = None
    try:
        with open(config_path, "r", encoding="utf-8") as handle:
            loaded = json.load(handle)
            if not isinstance(loaded, dict):
                raise ValueError("Invalid configuration format")
            config_data = loaded
    except FileNotFoundError:
        config_data = None
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load configuration from %s: %s", config_path, exc)
        config_data = None

    config = normalize_config(config_data, directory)
    _CACHE[directory] = config
