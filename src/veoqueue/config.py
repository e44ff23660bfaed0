from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

MODEL_ALIASES = {
    "preview": "veo-3.0-generate-preview",
    "fast": "veo-3.0-fast-generate-preview",
}
ASPECT_RATIOS = {"16:9", "9:16", "1:1"}


@dataclass(slots=True)
class PathsConfig:
    inbox: Path
    archive: Path
    videos: Path
    db: Path
    log: Path


@dataclass(slots=True)
class QueueConfig:
    interval_seconds: float = 120
    inbox_scan_seconds: float = 10


@dataclass(slots=True)
class PollerConfig:
    interval_seconds: float = 150
    poll_delay_seconds: float = 2
    backoff_base_seconds: float = 30
    max_retries: int = 5
    max_local_polls: int = 60
    max_workers: int = 4


@dataclass(slots=True)
class QuotaConfig:
    timezone: str = "America/Los_Angeles"
    reset_hour: int = 0
    reset_minute: int = 0


@dataclass(slots=True)
class GenerationSettings:
    model: str = "preview"
    aspect_ratio: str = "16:9"
    negative_prompt: str | None = None
    generate_audio: bool = False
    api_key_env: str = "GEMINI_API_KEY"
    request_timeout_seconds: float = 60

    @property
    def model_name(self) -> str:
        return MODEL_ALIASES.get(self.model, self.model)


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    queue: QueueConfig = field(default_factory=QueueConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    generation: GenerationSettings = field(default_factory=GenerationSettings)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    queue_raw = _section(raw, "queue")
    poller_raw = _section(raw, "poller")
    quota_raw = _section(raw, "quota")
    generation_raw = _section(raw, "generation")

    def to_path(key: str) -> Path:
        value = _require(paths_raw, key, "paths")
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        inbox=to_path("inbox"),
        archive=to_path("archive"),
        videos=to_path("videos"),
        db=to_path("db"),
        log=to_path("log"),
    )

    queue = QueueConfig(
        interval_seconds=float(queue_raw.get("interval_seconds", 120)),
        inbox_scan_seconds=float(queue_raw.get("inbox_scan_seconds", 10)),
    )
    if queue.interval_seconds <= 0:
        raise ValueError("`queue.interval_seconds` must be > 0")
    if queue.inbox_scan_seconds <= 0:
        raise ValueError("`queue.inbox_scan_seconds` must be > 0")

    poller = PollerConfig(
        interval_seconds=float(poller_raw.get("interval_seconds", 150)),
        poll_delay_seconds=float(poller_raw.get("poll_delay_seconds", 2)),
        backoff_base_seconds=float(poller_raw.get("backoff_base_seconds", 30)),
        max_retries=int(poller_raw.get("max_retries", 5)),
        max_local_polls=int(poller_raw.get("max_local_polls", 60)),
        max_workers=int(poller_raw.get("max_workers", 4)),
    )
    if poller.interval_seconds <= 0:
        raise ValueError("`poller.interval_seconds` must be > 0")
    if poller.poll_delay_seconds < 0:
        raise ValueError("`poller.poll_delay_seconds` must be >= 0")
    if poller.backoff_base_seconds <= 0:
        raise ValueError("`poller.backoff_base_seconds` must be > 0")
    if poller.max_retries < 0:
        raise ValueError("`poller.max_retries` must be >= 0")
    if poller.max_local_polls < 1:
        raise ValueError("`poller.max_local_polls` must be >= 1")
    if poller.max_workers < 1:
        raise ValueError("`poller.max_workers` must be >= 1")

    quota = QuotaConfig(
        timezone=str(quota_raw.get("timezone", "America/Los_Angeles")),
        reset_hour=int(quota_raw.get("reset_hour", 0)),
        reset_minute=int(quota_raw.get("reset_minute", 0)),
    )
    try:
        ZoneInfo(quota.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"`quota.timezone` is not a known timezone: {quota.timezone}") from exc
    if not 0 <= quota.reset_hour <= 23:
        raise ValueError("`quota.reset_hour` must be between 0 and 23")
    if not 0 <= quota.reset_minute <= 59:
        raise ValueError("`quota.reset_minute` must be between 0 and 59")

    negative_prompt = generation_raw.get("negative_prompt")
    generation = GenerationSettings(
        model=str(generation_raw.get("model", "preview")),
        aspect_ratio=str(generation_raw.get("aspect_ratio", "16:9")),
        negative_prompt=str(negative_prompt) if negative_prompt else None,
        generate_audio=bool(generation_raw.get("generate_audio", False)),
        api_key_env=str(generation_raw.get("api_key_env", "GEMINI_API_KEY")),
        request_timeout_seconds=float(generation_raw.get("request_timeout_seconds", 60)),
    )
    if generation.aspect_ratio not in ASPECT_RATIOS:
        raise ValueError(f"`generation.aspect_ratio` must be one of {sorted(ASPECT_RATIOS)}")

    return AppConfig(paths=paths, queue=queue, poller=poller, quota=quota, generation=generation)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.inbox.mkdir(parents=True, exist_ok=True)
    config.paths.archive.mkdir(parents=True, exist_ok=True)
    config.paths.videos.mkdir(parents=True, exist_ok=True)
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
