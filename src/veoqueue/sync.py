from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .app_logging import log_with_fields
from .generation import GenerationError
from .models import RemoteVideo
from .timers import Clock


class FilesClient(Protocol):
    def list_remote_videos(self) -> list[RemoteVideo]: ...

    def download_file(self, video: RemoteVideo) -> Iterator[bytes]: ...


@dataclass(slots=True)
class SyncReport:
    target_dir: Path
    remote_count: int
    already_have: int
    synced: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)


def sync_remote_videos(
    client: FilesClient,
    videos_dir: Path,
    clock: Clock,
    logger: logging.Logger,
) -> SyncReport:
    """Download every remote video file into a fresh ``sync_<stamp>`` directory."""
    remote_videos = client.list_remote_videos()
    stamp = clock.now().strftime("%Y%m%d_%H%M%S")
    target_dir = videos_dir / f"sync_{stamp}"
    target_dir.mkdir(parents=True, exist_ok=True)
    existing = {path.name for path in target_dir.iterdir()}
    report = SyncReport(target_dir=target_dir, remote_count=len(remote_videos), already_have=len(existing))

    for video in remote_videos:
        local_name = f"{video.file_id}{video.extension}"
        if local_name in existing:
            continue
        local_path = target_dir / local_name
        try:
            with local_path.open("wb") as handle:
                for chunk in client.download_file(video):
                    handle.write(chunk)
        except (GenerationError, OSError) as exc:
            local_path.unlink(missing_ok=True)
            report.errors.append({"id": video.file_id, "error": str(exc)})
            log_with_fields(logger, logging.WARNING, "sync_download_failed", file_id=video.file_id, error=str(exc))
            continue
        report.synced += 1
        log_with_fields(logger, logging.INFO, "sync_downloaded", file_id=video.file_id, path=str(local_path))

    log_with_fields(
        logger,
        logging.INFO,
        "sync_finished",
        target_dir=str(target_dir),
        remote_count=report.remote_count,
        synced=report.synced,
        errors=len(report.errors),
    )
    return report
