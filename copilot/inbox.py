"""Inbox folder scanning, frontmatter parsing, and archive logic.

An inbox file is a queued message for the copilot:

    ---
    project: apollo
    background: true
    velocity_gap_percent: 35
    stalest_blocker_days: 4.5
    ---
    We are definitely on track for the March release.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path

import frontmatter

from copilot.models import ProjectSignals

logger = logging.getLogger(__name__)

_FLOAT_SIGNALS = ("velocity_gap_percent", "stalest_blocker_days", "risk_severity_gap")


def ensure_dirs(inbox_dir: Path, archive_dir: Path) -> None:
    """Create inbox and archive directories if they don't exist."""
    inbox_dir.mkdir(parents=True, exist_ok=True)
    archive_dir.mkdir(parents=True, exist_ok=True)


def scan_inbox(inbox_dir: Path) -> list[Path]:
    """Return all .md files in inbox_dir, sorted by mtime ascending (oldest first)."""
    files = list(inbox_dir.glob("*.md"))
    return sorted(files, key=lambda p: p.stat().st_mtime)


def parse_file(file_path: Path) -> tuple[str, dict]:
    """Parse a markdown file with optional YAML frontmatter.

    Returns:
        (content, metadata) where content is the body text. Recognised
        metadata keys are project (str), background (bool) and the
        project signal fields. If no frontmatter, metadata is {}.
    """
    post = frontmatter.load(str(file_path))
    content = post.content.strip()
    metadata = dict(post.metadata)
    return content, metadata


def signals_from_metadata(metadata: dict) -> ProjectSignals | None:
    """Build ProjectSignals from frontmatter, or None if no signal keys are present."""
    values: dict = {}
    for key in _FLOAT_SIGNALS:
        if metadata.get(key) is not None:
            values[key] = float(metadata[key])
    if metadata.get("scope_added_without_tradeoff") is not None:
        values["scope_added_without_tradeoff"] = int(metadata["scope_added_without_tradeoff"])
    if metadata.get("sceptic_requested"):
        values["sceptic_requested"] = True
    return ProjectSignals(**values) if values else None


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move file to archive_dir with a timestamp prefix.

    Args:
        file_path: Source file to archive.
        archive_dir: Destination directory.
        failed: If True, prefix filename with "FAILED_".

    Returns:
        Path to the archived file.
    """
    timestamp = datetime.now().strftime("%Y-%m-%dT%H%M")
    prefix = "FAILED_" if failed else ""
    dest = archive_dir / f"{prefix}{timestamp}_{file_path.name}"
    shutil.move(str(file_path), str(dest))
    logger.debug("Archived %s -> %s", file_path.name, dest.name)
    return dest
