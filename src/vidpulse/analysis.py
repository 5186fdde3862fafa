from __future__ import annotations

import json
import logging
import math
import re
import time
from typing import Any

import httpx
import jsonschema

from .utils import format_duration, log_event, truncate

SYSTEM_PROMPT = (
    "You are an expert YouTube content analyst. Your task is to analyze video comments, "
    "provide insights, and suggest improvements to help content creators optimize their videos."
)

PROMPT_TEMPLATE = """
Analyze the following YouTube video comments and provide insights:

Video Title: {title}
Video ID: {video_id}
Number of Comments: {comment_count}

COMMENTS:
{comments}

{captions_block}

Please provide a structured JSON response with the following keys:
- "summary": a summary of the overall sentiment and main topics
- "sentiment_score": a number from -1 (very negative) to 1 (very positive)
- "top_5_topics": the top 5 topics or themes mentioned
- "suggestions_for_improvement": specific suggestions for improving content based on feedback
Mention any notable criticisms or praises in the summary.
"""

TRUNCATION_NOTE = "\n\n[Note: Content has been truncated due to length limits]"
COMMENTS_SHARE = 0.8

NO_COMMENTS_INSIGHTS: dict[str, Any] = {
    "summary": "No comments available for analysis",
    "sentimentScore": 0,
    "topTopics": [],
    "suggestions": [],
}

DEGRADED_INSIGHTS: dict[str, Any] = {
    "summary": "Failed to analyze comments",
    "sentimentScore": 0,
    "topTopics": [],
    "suggestions": ["Check API key and try again"],
}

INSIGHTS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["summary", "sentimentScore", "topTopics", "suggestions"],
    "properties": {
        "summary": {"type": "string"},
        "sentimentScore": {"type": "number", "minimum": -1, "maximum": 1},
        "topTopics": {"type": "array", "items": {"type": "string"}, "maxItems": 5},
        "suggestions": {"type": "array", "items": {"type": "string"}},
    },
}


def build_prompt(video: dict[str, Any], max_chars: int = 65500) -> str:
    """Render the analysis prompt, splitting free space 80/20 between comments and captions."""
    comments = [str(comment.get("text") or "") for comment in video.get("comments") or []]
    comments_text = "\n".join(comments)
    captions_text = ((video.get("captions") or {}).get("captionsText") or "").strip()

    fields = {
        "title": video.get("title") or "",
        "video_id": video.get("id") or "",
        "comment_count": len(comments),
    }
    skeleton = PROMPT_TEMPLATE.format(
        comments="",
        captions_block="CAPTIONS:\n" if captions_text else "",
        **fields,
    )
    available = max(0, max_chars - len(skeleton))
    if captions_text:
        comments_room = int(available * COMMENTS_SHARE)
        captions_room = available - comments_room
    else:
        comments_room = available
        captions_room = 0

    prompt = PROMPT_TEMPLATE.format(
        comments=comments_text[:comments_room],
        captions_block=f"CAPTIONS:\n{captions_text[:captions_room]}" if captions_text else "",
        **fields,
    )
    return truncate_prompt(prompt, max_chars)


def truncate_prompt(prompt: str, max_chars: int) -> str:
    if len(prompt) <= max_chars:
        return prompt
    return prompt[: max(0, max_chars - len(TRUNCATION_NOTE))] + TRUNCATION_NOTE


def parse_analysis_response(text: str) -> dict[str, Any]:
    """Pull structured insights out of a model reply.

    The first ``{...}`` span is parsed as JSON; replies without one fall back
    to loose extraction from prose.
    """
    match = re.search(r"\{[\s\S]*\}", text or "")
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            return data
    return {
        "summary": (text or "")[:500],
        "sentiment_score": _extract_sentiment(text or ""),
        "top_5_topics": _extract_section(text or "", "topics?")[:5],
        "suggestions_for_improvement": _extract_section(text or "", "suggestions?"),
    }


def normalize_insights(data: dict[str, Any]) -> dict[str, Any]:
    summary = _first(data, "summary", "analysis")
    score = _first(data, "sentimentScore", "sentiment_score", "sentiment")
    topics = _first(data, "topTopics", "top_5_topics", "topics")
    suggestions = _first(data, "suggestions", "suggestions_for_improvement")
    insights = {
        "summary": str(summary or ""),
        "sentimentScore": _clamp_score(score),
        "topTopics": _string_list(topics)[:5],
        "suggestions": _string_list(suggestions),
    }
    jsonschema.validate(insights, INSIGHTS_SCHEMA)
    return insights


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _clamp_score(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(score):
        return 0
    return max(-1.0, min(1.0, score))


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    items = []
    for entry in value:
        if isinstance(entry, dict):
            entry = entry.get("topic") or entry.get("name") or entry.get("text") or ""
        text = str(entry).strip()
        if text:
            items.append(text)
    return items


def _extract_sentiment(text: str) -> float:
    match = re.search(r"sentiment[^\d\-]*(-?\d+(?:\.\d+)?)", text, re.IGNORECASE)
    return float(match.group(1)) if match else 0


def _extract_section(text: str, heading: str) -> list[str]:
    match = re.search(rf"{heading}\s*:(.*?)(?:\n\s*\n|$)", text, re.IGNORECASE | re.DOTALL)
    if not match:
        return []
    lines = []
    for line in match.group(1).splitlines():
        cleaned = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", line).strip()
        if cleaned:
            lines.append(cleaned)
    return lines


class CommentAnalyzer:
    """Summarises a video's comments with an OpenAI-compatible chat model.

    ``analyze`` never raises; provider or parse failures yield
    :data:`DEGRADED_INSIGHTS` so the item still completes with a valid result.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.deepseek.com/v1",
        model: str = "deepseek-chat",
        temperature: float = 0.2,
        max_tokens: int = 1000,
        max_prompt_chars: int = 65500,
        timeout_seconds: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._max_prompt_chars = max_prompt_chars
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._logger = logger or logging.getLogger("vidpulse.analysis")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def analyze(self, video: dict[str, Any]) -> dict[str, Any]:
        started = time.monotonic()
        comments = video.get("comments") or []
        base = {
            "videoId": video.get("id"),
            "title": video.get("title"),
            "commentCount": len(comments),
        }
        if not comments:
            log_event(self._logger, logging.INFO, "analysis_skipped", video_id=video.get("id"))
            return {**base, **NO_COMMENTS_INSIGHTS}

        try:
            prompt = build_prompt(video, self._max_prompt_chars)
            log_event(
                self._logger,
                logging.INFO,
                "analysis_started",
                video_id=video.get("id"),
                comments=len(comments),
                prompt_chars=len(prompt),
            )
            reply = await self.complete(prompt)
            insights = normalize_insights(parse_analysis_response(reply))
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "analysis_failed",
                video_id=video.get("id"),
                error=truncate(str(exc), 300),
            )
            insights = dict(DEGRADED_INSIGHTS)
        else:
            log_event(
                self._logger,
                logging.INFO,
                "analysis_completed",
                video_id=video.get("id"),
                duration=format_duration((time.monotonic() - started) * 1000),
            )
        return {**base, **insights}

    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        response = await self._client.post(
            _join_url(self._base_url, "/chat/completions"),
            json=payload,
            headers=_auth_headers(self._api_key),
        )
        if response.status_code >= 400:
            raise ValueError(f"http_error {response.status_code}: {response.text[:500]}")
        return _read_openai(response.json())


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ValueError("openai_missing_choices")
    return choices[0]["message"]["content"] or ""


def _auth_headers(api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
