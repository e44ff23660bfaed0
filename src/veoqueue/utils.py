from __future__ import annotations

import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


def new_job_id() -> str:
    return str(uuid.uuid4())


def move_non_destructive(src: Path, dst_dir: Path, preferred_name: str | None = None) -> Path:
    """Move ``src`` into ``dst_dir``, picking ``name.N.ext`` when the name is taken."""
    dst_dir.mkdir(parents=True, exist_ok=True)
    destination = dst_dir / (preferred_name or src.name)
    if not destination.exists():
        shutil.move(str(src), str(destination))
        return destination

    stem = destination.stem
    suffix = destination.suffix
    index = 1
    while True:
        candidate = dst_dir / f"{stem}.{index}{suffix}"
        if not candidate.exists():
            shutil.move(str(src), str(candidate))
            return candidate
        index += 1
