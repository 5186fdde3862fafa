from __future__ import annotations

import pytest

from vidpulse.config import load_config
from vidpulse.errors import NotFoundError

CONFIG_ENV = (
    "VP_CONFIG_PATH",
    "VP_BROKER_URL",
    "YOUTUBE_API_KEY",
    "ANALYSIS_API_KEY",
    "DEEPSEEK_API_KEY",
)


class FakeSource:
    def __init__(self, items, *, fail_detail=(), missing=False):
        self.items = items
        self.fail_detail = set(fail_detail)
        self.missing = missing
        self.detail_calls = []
        self.closed = False

    async def list_items(self, channel_id):
        if self.missing:
            raise NotFoundError("Channel not found")
        return [dict(item) for item in self.items]

    async def fetch_detail(self, item):
        self.detail_calls.append(item["id"])
        if item["id"] in self.fail_detail:
            raise RuntimeError(f"detail failed for {item['id']}")
        return {
            **item,
            "comments": [{"text": "great video"}, {"text": "too long"}],
            "captions": {"captions": [], "captionsText": ""},
        }

    async def aclose(self):
        self.closed = True


class FakeAnalyzer:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.seen = []

    async def analyze(self, video):
        self.seen.append(video["id"])
        if video["id"] in self.fail:
            raise RuntimeError("analysis exploded")
        return {
            "videoId": video["id"],
            "title": video.get("title"),
            "commentCount": len(video.get("comments") or []),
            "summary": "viewers are happy",
            "sentimentScore": 0.5,
            "topTopics": ["editing"],
            "suggestions": ["shorter intro"],
        }


@pytest.fixture
def config(monkeypatch):
    for name in CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)
    return load_config()


@pytest.fixture
def make_items():
    def _make(count):
        return [{"id": f"vid{index}", "title": f"Video {index}"} for index in range(1, count + 1)]

    return _make


@pytest.fixture
def fake_source():
    return FakeSource


@pytest.fixture
def fake_analyzer():
    return FakeAnalyzer
