import os
import sys
from pathlib import Path
from typing import Callable, List

import pytest

# Ensure tests can import the project modules regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from app import init_app  # noqa: E402
from cache_store import CacheStore  # noqa: E402
from errors import ToolExitError, ToolSpawnError, UpstreamError  # noqa: E402
from settings import normalize_config  # noqa: E402
from tools import Toolbox  # noqa: E402

FINAL_BYTES = b"0123456789"


class FakeToolbox(Toolbox):
    """Toolbox that simulates yt-dlp and ffmpeg by writing files."""

    def __init__(self, config=None, *, fetch_suffix="", fetch_writes=True, fail=None, missing_tool=None):
        super().__init__(config or normalize_config({}))
        self.fetch_suffix = fetch_suffix
        self.fetch_writes = fetch_writes
        self.fail = fail
        self.missing_tool = missing_tool
        self.commands: List[List[str]] = []

    def run(self, command, label):
        self.commands.append(list(command))
        if label == self.missing_tool:
            raise ToolSpawnError(label, "No such file or directory")
        if label == "yt-dlp":
            output_path = command[command.index("-o") + 1]
            if self.fetch_writes:
                Path(output_path + self.fetch_suffix).write_bytes(b"raw")
            if self.fail == "yt-dlp":
                raise ToolExitError(label, 1, "ERROR: Unsupported URL")
            return ""
        output_path = command[-1]
        Path(output_path).write_bytes(FINAL_BYTES[:5])
        if self.fail == "ffmpeg":
            raise ToolExitError(label, 1, "Conversion failed!")
        Path(output_path).write_bytes(FINAL_BYTES)
        return ""

    def commands_for(self, tool: str) -> List[List[str]]:
        binary = self.ytdlp_path if tool == "yt-dlp" else self.ffmpeg_path
        return [command for command in self.commands if command[0] == binary]


class DeferredSpawner:
    """Collects job callables so tests decide when workers run."""

    def __init__(self) -> None:
        self.pending: List[Callable[[], None]] = []

    def __call__(self, target: Callable[[], None]) -> None:
        self.pending.append(target)

    def run_all(self) -> int:
        count = 0
        while self.pending:
            self.pending.pop(0)()
            count += 1
        return count


class StubClient:
    """Stands in for BilibiliClient with canned API payloads."""

    def __init__(self) -> None:
        self.streams = ("https://upos.example.com/video.m4s", "https://upos.example.com/audio.m4s")
        self.short_link_target = "https://www.bilibili.com/video/BV1xx411c7mD/"
        self.titles = {"BV1xx411c7mD": "Stub upload"}

    def popular(self, page=1):
        return {"list": [{"bvid": "BV1xx411c7mD", "title": "Popular <em>one</em>"}], "no_more": False}

    def category(self, rid, page=1):
        return {
            "archives": [{"aid": 170001, "title": "Zone video"}],
            "page": {"count": 45, "num": page, "size": 20},
        }

    def search(self, keyword, page=1):
        return {"result": [{"bvid": "BV1xx411c7mD", "title": f'<em class="keyword">{keyword}</em> clip'}], "numPages": 1}

    def timeline(self):
        return [
            {
                "date": "10-19",
                "day_of_week": 1,
                "is_today": 1,
                "episodes": [{"pub_time": "20:00", "season_id": 33, "title": "Show", "pub_index": "Ep 3"}],
            }
        ]

    def video_details(self, video_id):
        if video_id not in self.titles:
            raise UpstreamError("Bilibili API error: -404")
        return {
            "bvid": video_id,
            "aid": 170001,
            "title": self.titles[video_id],
            "desc": "A description",
            "duration": 125,
            "owner": {"name": "Uploader"},
            "stat": {"view": 10, "danmaku": 2},
            "pages": [{"cid": 111, "page": 1, "part": "Intro"}, {"cid": 222, "page": 2, "part": "Main"}],
        }

    def season_details(self, episode_id=None, season_id=None):
        return {
            "title": "Show",
            "evaluate": "Season description",
            "stat": {"views": 5, "favorites": 1},
            "episodes": [{"id": 456, "cid": 789, "title": "1", "long_title": "Pilot"}],
            "section": [{"title": "Extras", "episodes": [{"id": 457, "cid": 790, "title": "PV", "long_title": ""}]}],
        }

    def episode_streams(self, episode_id, cid):
        return self.streams

    def resolve_short_link(self, url):
        return self.short_link_target

    def lookup_title(self, video_id):
        return self.titles.get(video_id)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("BBBILI_"):
            monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def store(cache_dir: Path) -> CacheStore:
    return CacheStore(str(cache_dir))


@pytest.fixture
def toolbox() -> FakeToolbox:
    return FakeToolbox()


@pytest.fixture
def spawner() -> DeferredSpawner:
    return DeferredSpawner()


@pytest.fixture
def stub_client() -> StubClient:
    return StubClient()


@pytest.fixture
def app(cache_dir, toolbox, spawner, stub_client):
    application = init_app(
        {"cache_dir": str(cache_dir)},
        client=stub_client,
        toolbox=toolbox,
        spawn=spawner,
    )
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    return app.test_client()
