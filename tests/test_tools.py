import os
import sys

import pytest

from errors import ResolutionError, ToolExitError, ToolSpawnError, ToolTimeoutError
from settings import normalize_config
from tools import BILIBILI_STREAM_HEADERS, Toolbox, remove_file, resolve_fetched_file, run_tool

KEY = "d" * 32


@pytest.fixture
def real_toolbox():
    return Toolbox(normalize_config({}))


def test_fetch_command_flags(real_toolbox):
    command = real_toolbox.fetch_command("https://www.bilibili.com/video/BV1xx411c7mD/", "/tmp/x_raw.part")
    assert command[0] == "yt-dlp"
    assert command[command.index("-f") + 1] == (
        "bv[height<=360][ext=mp4]+ba[ext=m4a]/b[height<=360][ext=mp4]/bv[height<=360]+ba/b[height<=360]"
    )
    assert "--no-playlist" in command
    assert command[command.index("-o") + 1] == "/tmp/x_raw.part"
    assert command[command.index("--socket-timeout") + 1] == "30"
    assert command[command.index("--retries") + 1] == "5"
    assert command[-1] == "https://www.bilibili.com/video/BV1xx411c7mD/"
    assert "--cookies" not in command


def test_fetch_command_uses_existing_cookie_file(tmp_path):
    cookie_file = tmp_path / "cookies.txt"
    cookie_file.write_text("# Netscape HTTP Cookie File\n")
    toolbox = Toolbox(normalize_config({"cookie_file": str(cookie_file)}))
    command = toolbox.fetch_command("https://example.com/v", "/tmp/out")
    assert command[command.index("--cookies") + 1] == str(cookie_file)


def test_missing_cookie_file_is_ignored(tmp_path):
    toolbox = Toolbox(normalize_config({"cookie_file": str(tmp_path / "absent.txt")}))
    assert "--cookies" not in toolbox.fetch_command("https://example.com/v", "/tmp/out")


def test_transcode_command_targets_the_device(real_toolbox):
    command = real_toolbox.transcode_command(["/cache/in_raw.mp4"], "/cache/out_final.mp4")
    joined = " ".join(command)
    assert command[:3] == ["ffmpeg", "-hide_banner", "-nostats"]
    assert command[command.index("-i") + 1] == "/cache/in_raw.mp4"
    assert "-headers" not in command
    assert "pad=320:240:(ow-iw)/2:(oh-ih)/2:black" in command[command.index("-vf") + 1]
    assert "-vcodec libx264 -profile:v baseline -level 3.0 -preset veryfast -crf 28" in joined
    assert "-acodec aac -ar 44100 -b:a 96k" in joined
    assert "-movflags +faststart" in joined
    assert command[-2:] == ["-y", "/cache/out_final.mp4"]


def test_transcode_command_adds_headers_for_remote_inputs(real_toolbox):
    inputs = ["https://upos.example.com/v.m4s", "https://upos.example.com/a.m4s"]
    command = real_toolbox.transcode_command(inputs, "/cache/out_final.mp4")
    assert command.count("-headers") == 2
    assert command.count(BILIBILI_STREAM_HEADERS) == 2
    assert "Referer: https://www.bilibili.com" in BILIBILI_STREAM_HEADERS
    positions = [index for index, part in enumerate(command) if part == "-i"]
    assert [command[index + 1] for index in positions] == inputs


def test_transcode_command_requires_inputs(real_toolbox):
    with pytest.raises(ValueError):
        real_toolbox.transcode_command([], "/cache/out_final.mp4")


def test_configured_frame_and_quality():
    toolbox = Toolbox(normalize_config({"frame_width": 480, "frame_height": 360, "video_crf": 30, "max_height": 480}))
    command = toolbox.transcode_command(["in.mp4"], "out.mp4")
    assert "pad=480:360" in command[command.index("-vf") + 1]
    assert command[command.index("-crf") + 1] == "30"
    assert "height<=480" in toolbox.format_selector()


def test_zero_settings_are_kept():
    toolbox = Toolbox(normalize_config({"video_crf": 0, "retries": 0, "tool_timeout": 0}))
    transcode = toolbox.transcode_command(["in.mp4"], "out.mp4")
    fetch = toolbox.fetch_command("https://example.com/v", "/tmp/out")
    assert transcode[transcode.index("-crf") + 1] == "0"
    assert fetch[fetch.index("--retries") + 1] == "0"
    assert toolbox.timeout is None


def test_run_tool_returns_output():
    output = run_tool([sys.executable, "-c", "print('hello')"], label="python")
    assert output.strip() == "hello"


def test_run_tool_missing_binary():
    with pytest.raises(ToolSpawnError) as excinfo:
        run_tool(["/nonexistent/bin/yt-dlp-missing", "--version"], label="yt-dlp")
    assert excinfo.value.tool == "yt-dlp"
    assert excinfo.value.message.startswith("Failed to start yt-dlp")


def test_run_tool_non_zero_exit_carries_output_tail():
    script = "import sys; print('first'); print('last words'); sys.exit(3)"
    with pytest.raises(ToolExitError) as excinfo:
        run_tool([sys.executable, "-c", script], label="ffmpeg")
    assert excinfo.value.returncode == 3
    assert excinfo.value.message.startswith("ffmpeg exited with code 3")
    assert "last words" in excinfo.value.message


def test_run_tool_timeout():
    with pytest.raises(ToolTimeoutError):
        run_tool([sys.executable, "-c", "import time; time.sleep(30)"], label="slow", timeout=0.5)


def test_resolve_fetched_file_priority(tmp_path):
    for suffix in ("_raw.mp4", "_raw.part.mp4"):
        (tmp_path / f"{KEY}{suffix}").write_bytes(b"x")
    assert resolve_fetched_file(str(tmp_path), KEY) == os.path.join(str(tmp_path), f"{KEY}_raw.part.mp4")


def test_resolve_fetched_file_accepts_container_variants(tmp_path):
    (tmp_path / f"{KEY}_raw.part.webm").write_bytes(b"x")
    assert resolve_fetched_file(str(tmp_path), KEY).endswith("_raw.part.webm")


def test_resolve_fetched_file_without_output(tmp_path):
    with pytest.raises(ResolutionError) as excinfo:
        resolve_fetched_file(str(tmp_path), KEY)
    assert excinfo.value.message == "yt-dlp reported success but produced no file"


def test_remove_file(tmp_path):
    target = tmp_path / "gone.bin"
    target.write_bytes(b"x")
    assert remove_file(str(target)) is True
    assert remove_file(str(target)) is False
    assert remove_file(None) is False
