"""YouTube Data API item source and yt-dlp caption fetching."""
from __future__ import annotations

import asyncio
import glob
import json
import logging
import os
import re
import tempfile
from typing import Any

import httpx
from bs4 import BeautifulSoup

from ..errors import ItemProcessingError, NotFoundError, TransientExternalError
from ..utils import log_event, truncate

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"


class CaptionFetcher:
    """Downloads auto-generated captions with yt-dlp in json3 format."""

    def __init__(
        self,
        *,
        ytdlp_path: str = "yt-dlp",
        lang: str = "en",
        timeout_seconds: float = 60.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._ytdlp_path = ytdlp_path
        self._lang = lang
        self._timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger("vidpulse.sources.captions")

    def build_command(self, video_id: str, output_template: str) -> list[str]:
        return [
            self._ytdlp_path,
            WATCH_URL.format(video_id=video_id),
            "--skip-download",
            "--write-auto-sub",
            "--sub-format",
            "json3",
            "--sub-lang",
            self._lang,
            "-o",
            output_template,
        ]

    async def fetch(self, video_id: str) -> dict[str, Any]:
        with tempfile.TemporaryDirectory(prefix="vidpulse-captions-") as workdir:
            cmd = self.build_command(video_id, os.path.join(workdir, video_id))
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
            except FileNotFoundError as exc:
                raise ItemProcessingError(
                    f"yt-dlp executable not found: {self._ytdlp_path}", item_id=video_id
                ) from exc
            try:
                output, _ = await asyncio.wait_for(proc.communicate(), self._timeout_seconds)
            except asyncio.TimeoutError as exc:
                proc.kill()
                await proc.wait()
                raise ItemProcessingError("yt-dlp timed out", item_id=video_id) from exc
            if proc.returncode != 0:
                tail = (output or b"").decode("utf-8", errors="replace").strip()[-300:]
                raise ItemProcessingError(
                    f"yt-dlp exited with {proc.returncode}: {tail}", item_id=video_id
                )
            paths = sorted(glob.glob(os.path.join(workdir, f"{glob.escape(video_id)}*.json3")))
            if not paths:
                log_event(self._logger, logging.INFO, "captions_missing", video_id=video_id)
                return {"captions": [], "captionsText": ""}
            with open(paths[0], "r", encoding="utf-8") as handle:
                content = handle.read()
        captions = parse_json3_captions(content)
        return {"captions": captions, "captionsText": captions_text(captions)}


def parse_json3_captions(content: str) -> list[dict[str, Any]]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return []
    if not isinstance(data, dict):
        return []
    captions = []
    for event in data.get("events") or []:
        segments = event.get("segs") if isinstance(event, dict) else None
        if not segments:
            continue
        text = "".join(str(seg.get("utf8") or "") for seg in segments if isinstance(seg, dict)).strip()
        if not text:
            continue
        captions.append(
            {
                "start": (event.get("tStartMs") or 0) / 1000,
                "dur": (event.get("dDurationMs") or 0) / 1000,
                "text": text,
            }
        )
    return captions


def captions_text(captions: list[dict[str, Any]]) -> str:
    pieces = [str(caption.get("text") or "").strip() for caption in captions]
    joined = " ".join(piece for piece in pieces if piece)
    return re.sub(r"\s+", " ", joined).strip()


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    soup = BeautifulSoup(value, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    return soup.get_text().strip()


class YouTubeItemSource:
    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://www.googleapis.com/youtube/v3",
        max_videos: int = 3,
        max_comments: int = 10,
        captions: CaptionFetcher | None = None,
        timeout_seconds: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._max_videos = max_videos
        self._max_comments = max_comments
        self._captions = captions
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._logger = logger or logging.getLogger("vidpulse.sources.youtube")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, resource: str, params: dict[str, Any]) -> dict[str, Any]:
        query = dict(params)
        if self._api_key:
            query["key"] = self._api_key
        response = await self._client.get(f"{self._base_url}/{resource}", params=query)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"unexpected {resource} response")
        return payload

    async def list_items(self, channel_id: str) -> list[dict[str, Any]]:
        try:
            channels = await self._get("channels", {"id": channel_id, "part": "contentDetails"})
            found = channels.get("items") or []
            if not found:
                raise NotFoundError(
                    "Channel not found", detail=f"No YouTube channel with id {channel_id}"
                )
            uploads = (
                ((found[0].get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")
            )
            if not uploads:
                return []
            playlist = await self._get(
                "playlistItems",
                {
                    "playlistId": uploads,
                    "part": "snippet,contentDetails",
                    "maxResults": self._max_videos,
                },
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                raise NotFoundError("Channel not found", detail=str(exc)) from exc
            raise TransientExternalError("YouTube API request failed", detail=str(exc)) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransientExternalError("YouTube API unavailable", detail=str(exc)) from exc

        items = []
        for entry in playlist.get("items") or []:
            snippet = entry.get("snippet") or {}
            details = entry.get("contentDetails") or {}
            video_id = details.get("videoId") or (snippet.get("resourceId") or {}).get("videoId")
            if not video_id:
                continue
            items.append(
                {
                    "id": video_id,
                    "title": snippet.get("title") or "",
                    "description": snippet.get("description") or "",
                    "publishedAt": snippet.get("publishedAt"),
                    "thumbnails": snippet.get("thumbnails") or {},
                }
            )
        log_event(
            self._logger,
            logging.INFO,
            "channel_listed",
            channel_id=channel_id,
            videos=len(items),
        )
        return items

    async def fetch_detail(self, item: dict[str, Any]) -> dict[str, Any]:
        video_id = item.get("id")
        if not video_id:
            raise ItemProcessingError("item has no id")
        video = dict(item)
        video["comments"] = []
        video["captions"] = {"captions": [], "captionsText": ""}

        try:
            video["comments"] = await self.fetch_comments(video_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "comments_unavailable",
                video_id=video_id,
                error=truncate(str(exc), 200),
            )

        if self._captions is not None:
            try:
                video["captions"] = await self._captions.fetch(video_id)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.WARNING,
                    "captions_unavailable",
                    video_id=video_id,
                    error=truncate(str(exc), 200),
                )

        log_event(
            self._logger,
            logging.INFO,
            "video_detail_fetched",
            video_id=video_id,
            comments=len(video["comments"]),
            caption_chars=len(video["captions"].get("captionsText") or ""),
        )
        return video

    async def fetch_comments(self, video_id: str) -> list[dict[str, Any]]:
        payload = await self._get(
            "commentThreads",
            {"videoId": video_id, "part": "snippet", "maxResults": self._max_comments},
        )
        comments = []
        for thread in payload.get("items") or []:
            top = ((thread.get("snippet") or {}).get("topLevelComment") or {}).get("snippet") or {}
            comments.append(
                {
                    "id": thread.get("id"),
                    "authorDisplayName": top.get("authorDisplayName"),
                    "authorProfileImageUrl": top.get("authorProfileImageUrl"),
                    "authorChannelUrl": top.get("authorChannelUrl"),
                    "text": strip_html(top.get("textDisplay") or top.get("textOriginal")),
                    "likeCount": top.get("likeCount") or 0,
                    "publishedAt": top.get("publishedAt"),
                }
            )
        return comments
