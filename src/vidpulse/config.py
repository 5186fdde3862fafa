from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class BrokerConfig:
    url: str
    max_attempts: int
    poll_timeout_seconds: float


@dataclass(frozen=True)
class QueuesConfig:
    work: str
    results: str


@dataclass(frozen=True)
class YouTubeConfig:
    api_base: str
    api_key: str | None
    max_videos: int
    max_comments: int
    caption_lang: str
    ytdlp_path: str
    timeout_seconds: float


@dataclass(frozen=True)
class AnalysisConfig:
    api_base: str
    api_key: str | None
    model: str
    temperature: float
    max_tokens: int
    max_prompt_chars: int
    timeout_seconds: float


@dataclass(frozen=True)
class JobsConfig:
    retention_seconds: int
    minutes_per_video: int


@dataclass(frozen=True)
class WorkerConfig:
    embedded: bool


@dataclass(frozen=True)
class Config:
    app: AppConfig
    broker: BrokerConfig
    queues: QueuesConfig
    youtube: YouTubeConfig
    analysis: AnalysisConfig
    jobs: JobsConfig
    worker: WorkerConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "VidPulse",
    },
    "broker": {
        "url": "memory://",
        "max_attempts": 5,
        "poll_timeout_seconds": 1.0,
    },
    "queues": {
        "work": "video_analysis_queue",
        "results": "analysis_results_queue",
    },
    "youtube": {
        "api_base": "https://www.googleapis.com/youtube/v3",
        "max_videos": 3,
        "max_comments": 10,
        "caption_lang": "en",
        "ytdlp_path": "yt-dlp",
        "timeout_seconds": 20.0,
    },
    "analysis": {
        "api_base": "https://api.deepseek.com/v1",
        "model": "deepseek-chat",
        "temperature": 0.2,
        "max_tokens": 1000,
        "max_prompt_chars": 65500,
        "timeout_seconds": 120.0,
    },
    "jobs": {
        "retention_seconds": 0,
        "minutes_per_video": 2,
    },
    "worker": {
        "embedded": False,
    },
}

CONFIG_PATH_ENV = "VP_CONFIG_PATH"


def load_config(path: str | None = None) -> Config:
    cfg = load_raw_config(path)
    return _build_config(cfg)


def load_raw_config(path: str | None = None) -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or os.environ.get(CONFIG_PATH_ENV)
    if path:
        overlay = _read_yaml(path)
        cfg = _deep_merge(cfg, overlay)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return cfg


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        if cfg["broker"]["max_attempts"] < 1:
            errors.append("config.broker.max_attempts must be >= 1")
    return errors


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    broker_cfg = cfg["broker"]
    queues_cfg = cfg["queues"]
    youtube_cfg = cfg["youtube"]
    analysis_cfg = cfg["analysis"]
    jobs_cfg = cfg["jobs"]
    worker_cfg = cfg["worker"]

    broker = BrokerConfig(
        url=os.environ.get("VP_BROKER_URL") or str(broker_cfg["url"]),
        max_attempts=int(broker_cfg["max_attempts"]),
        poll_timeout_seconds=float(broker_cfg["poll_timeout_seconds"]),
    )

    youtube = YouTubeConfig(
        api_base=str(youtube_cfg["api_base"]),
        api_key=os.environ.get("YOUTUBE_API_KEY") or None,
        max_videos=int(youtube_cfg["max_videos"]),
        max_comments=int(youtube_cfg["max_comments"]),
        caption_lang=str(youtube_cfg["caption_lang"]),
        ytdlp_path=str(youtube_cfg["ytdlp_path"]),
        timeout_seconds=float(youtube_cfg["timeout_seconds"]),
    )

    analysis = AnalysisConfig(
        api_base=str(analysis_cfg["api_base"]),
        api_key=os.environ.get("ANALYSIS_API_KEY") or os.environ.get("DEEPSEEK_API_KEY") or None,
        model=str(analysis_cfg["model"]),
        temperature=float(analysis_cfg["temperature"]),
        max_tokens=int(analysis_cfg["max_tokens"]),
        max_prompt_chars=int(analysis_cfg["max_prompt_chars"]),
        timeout_seconds=float(analysis_cfg["timeout_seconds"]),
    )

    return Config(
        app=AppConfig(name=str(app_cfg["name"])),
        broker=broker,
        queues=QueuesConfig(work=str(queues_cfg["work"]), results=str(queues_cfg["results"])),
        youtube=youtube,
        analysis=analysis,
        jobs=JobsConfig(
            retention_seconds=int(jobs_cfg["retention_seconds"]),
            minutes_per_video=int(jobs_cfg["minutes_per_video"]),
        ),
        worker=WorkerConfig(embedded=bool(worker_cfg["embedded"])),
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
