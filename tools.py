"""Invocation of the external fetch (yt-dlp) and transcode (ffmpeg) tools."""

import logging
import os
import subprocess
from typing import Any, Dict, List, Optional, Sequence

from errors import ResolutionError, ToolExitError, ToolSpawnError, ToolTimeoutError

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 3

# yt-dlp renames or merges its output depending on the version and on whether
# audio and video were fetched separately. Checked in this order.
FETCHED_FILE_SUFFIXES = (
    "_raw.part",
    "_raw.part.mp4",
    "_raw.mp4",
    "_raw.part.mkv",
    "_raw.part.webm",
)

BILIBILI_STREAM_HEADERS = (
    "User-Agent: Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/110.0.0.0 Safari/537.36\r\n"
    "Referer: https://www.bilibili.com\r\n"
)


def _terminate_process(process: Optional[subprocess.Popen]) -> None:
    """Attempt to gracefully stop a running subprocess."""

    if process is None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            pass


def _output_tail(text: str, limit: int = OUTPUT_TAIL_LINES) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return " | ".join(lines[-limit:])


def run_tool(command: Sequence[str], *, label: Optional[str] = None, timeout: Optional[float] = None) -> str:
    """Run ``command`` to completion and return its combined output.

    Raises :class:`ToolSpawnError` when the binary cannot be started,
    :class:`ToolTimeoutError` when ``timeout`` elapses and
    :class:`ToolExitError` for a non-zero exit status.
    """

    tool = label or os.path.basename(command[0])
    logger.debug("Running %s", " ".join(command))
    try:
        process = subprocess.Popen(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
        )
    except OSError as exc:
        raise ToolSpawnError(tool, exc) from exc

    with process:
        try:
            raw_output, _ = process.communicate(timeout=timeout or None)
        except subprocess.TimeoutExpired as exc:
            _terminate_process(process)
            process.communicate()
            raise ToolTimeoutError(tool, timeout or 0) from exc

    output = (raw_output or b"").decode("utf-8", errors="replace")
    for line in output.splitlines():
        if line.strip():
            logger.debug("[%s] %s", tool, line.rstrip())
    if process.returncode != 0:
        raise ToolExitError(tool, process.returncode, _output_tail(output))
    return output


def remove_file(path: Optional[str]) -> bool:
    """Delete ``path`` if it exists; return True when a file was removed."""

    if not path:
        return False
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
        return False
    logger.debug("Removed %s", path)
    return True


def resolve_fetched_file(cache_dir: str, key: str) -> str:
    """Return the first existing output of a successful fetch for ``key``."""

    for suffix in FETCHED_FILE_SUFFIXES:
        candidate = os.path.join(cache_dir, f"{key}{suffix}")
        if os.path.isfile(candidate):
            return candidate
    raise ResolutionError("yt-dlp reported success but produced no file")


class Toolbox:
    """Build and run the yt-dlp and ffmpeg command lines for one configuration."""

    def __init__(self, config: Dict[str, Any]) -> None:
        self.ytdlp_path = config.get("ytdlp_path", "yt-dlp")
        self.ffmpeg_path = config.get("ffmpeg_path", "ffmpeg")
        self.max_height = int(config.get("max_height", 360))
        self.socket_timeout = int(config.get("socket_timeout", 30))
        self.retries = int(config.get("retries", 5))
        self.frame_width = int(config.get("frame_width", 320))
        self.frame_height = int(config.get("frame_height", 240))
        self.video_crf = int(config.get("video_crf", 28))
        self.audio_bitrate = str(config.get("audio_bitrate", "96k"))
        self.audio_rate = int(config.get("audio_rate", 44100))
        self.cookie_file = config.get("cookie_file", "")
        # 0 disables the limit.
        self.timeout = float(config.get("tool_timeout", 0)) or None

    def format_selector(self) -> str:
        height = self.max_height
        return (
            f"bv[height<={height}][ext=mp4]+ba[ext=m4a]/"
            f"b[height<={height}][ext=mp4]/"
            f"bv[height<={height}]+ba/"
            f"b[height<={height}]"
        )

    def fetch_command(self, url: str, output_path: str) -> List[str]:
        command = [self.ytdlp_path]
        if self.cookie_file and os.path.isfile(self.cookie_file):
            command += ["--cookies", self.cookie_file]
        command += [
            "-f",
            self.format_selector(),
            "--no-playlist",
            "-o",
            output_path,
            "--socket-timeout",
            str(self.socket_timeout),
            "--retries",
            str(self.retries),
            url,
        ]
        return command

    def video_filter(self) -> str:
        width, height = self.frame_width, self.frame_height
        return (
            f"scale='if(gt(a,{width}/{height}),{width},-2)':"
            f"'if(gt(a,{width}/{height}),-2,{height})',"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:black,format=yuv420p"
        )

    def transcode_command(self, inputs: Sequence[str], output_path: str) -> List[str]:
        if not inputs:
            raise ValueError("At least one transcode input is required.")
        command = [self.ffmpeg_path, "-hide_banner", "-nostats"]
        for source in inputs:
            if source.startswith(("http://", "https://")):
                command += ["-headers", BILIBILI_STREAM_HEADERS]
            command += ["-i", source]
        command += [
            "-vf",
            self.video_filter(),
            "-vcodec",
            "libx264",
            "-profile:v",
            "baseline",
            "-level",
            "3.0",
            "-preset",
            "veryfast",
            "-crf",
            str(self.video_crf),
            "-acodec",
            "aac",
            "-ar",
            str(self.audio_rate),
            "-b:a",
            self.audio_bitrate,
            "-movflags",
            "+faststart",
            "-y",
            output_path,
        ]
        return command

    def run(self, command: Sequence[str], label: str) -> str:
        return run_tool(command, label=label, timeout=self.timeout)
