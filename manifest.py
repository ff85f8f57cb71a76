"""Manifest loading and saving for workshop-sync.

The manifest is a YAML list. Each item is either a bare workshop id,
which declares an enabled mod, or a mapping::

    - 1703611962
    - id: 1717463209
      disabled: true

Saved manifests carry comment lines above every entry (title, workshop
page, last update). Comments are regenerated from catalog data on each
run and are never read back.
"""

import os
import shutil
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import yaml

from errors import ManifestNotFound, ManifestParseError


HEADER = (
    "# Mods managed by workshop-sync.\n"
    "# List workshop ids; use `- id: <id>` with `disabled: true` to keep a mod\n"
    "# declared without installing it. Comment lines are rewritten on every sync.\n"
)

ENTRY_KEYS = {"id", "disabled"}


@dataclass(frozen=True)
class ManifestEntry:
    id: int
    disabled: bool = False


@dataclass(frozen=True)
class Annotation:
    """Write-only comment data emitted above a manifest entry."""

    title: str
    url: str
    updated_at: datetime | None = None
    error: str | None = None

    def lines(self) -> list[str]:
        lines = [_comment(self.title), _comment(self.url)]
        if self.updated_at is not None:
            lines.append(_comment(f"updated: {self.updated_at.isoformat()}"))
        if self.error:
            lines.append(_comment(f"last sync failed: {self.error}"))
        return lines


def _comment(text: str) -> str:
    return "# " + " ".join(str(text).split())


def _parse_entry(item: object, position: int) -> ManifestEntry:
    if isinstance(item, Mapping):
        unknown = sorted(str(key) for key in set(item) - ENTRY_KEYS)
        if unknown:
            raise ManifestParseError(
                f"Entry {position}: unknown field(s) {', '.join(unknown)}"
            )
        if "id" not in item:
            raise ManifestParseError(f"Entry {position}: missing 'id'")
        mod_id = item["id"]
        disabled = item.get("disabled", False)
        if not isinstance(disabled, bool):
            raise ManifestParseError(
                f"Entry {position}: 'disabled' must be true or false, got {disabled!r}"
            )
    else:
        mod_id = item
        disabled = False

    # bool is an int subclass; `- true` is not an id
    if isinstance(mod_id, bool) or not isinstance(mod_id, int):
        raise ManifestParseError(f"Entry {position}: id must be an integer, got {mod_id!r}")
    if mod_id <= 0:
        raise ManifestParseError(f"Entry {position}: id must be positive, got {mod_id}")
    return ManifestEntry(id=mod_id, disabled=disabled)


def parse_manifest(text: str) -> list[ManifestEntry]:
    """Parse manifest text into entries, preserving order."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestParseError(f"Invalid YAML: {e}") from e

    if document is None:
        return []
    if not isinstance(document, list):
        raise ManifestParseError(
            f"Manifest must be a list of entries, got {type(document).__name__}"
        )

    entries: list[ManifestEntry] = []
    seen: set[int] = set()
    for position, item in enumerate(document, start=1):
        entry = _parse_entry(item, position)
        if entry.id in seen:
            raise ManifestParseError(f"Entry {position}: duplicate id {entry.id}")
        seen.add(entry.id)
        entries.append(entry)
    return entries


def load_manifest(path: Path) -> list[ManifestEntry]:
    """Load manifest entries from ``path``."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ManifestNotFound(f"Manifest not found: {path}") from e
    except UnicodeDecodeError as e:
        raise ManifestParseError(f"Manifest is not valid UTF-8: {e}") from e
    return parse_manifest(text)


def render_manifest(
    entries: Iterable[ManifestEntry],
    annotations: Mapping[int, Annotation] | None = None,
) -> str:
    annotations = annotations or {}
    blocks: list[str] = []
    for entry in entries:
        lines = []
        annotation = annotations.get(entry.id)
        if annotation is not None:
            lines.extend(annotation.lines())
        if entry.disabled:
            lines.append(f"- id: {entry.id}")
            lines.append("  disabled: true")
        else:
            lines.append(f"- {entry.id}")
        blocks.append("\n".join(lines) + "\n")

    if not blocks:
        return HEADER + "\n[]\n"
    return HEADER + "\n" + "\n".join(blocks)


def save_manifest(
    path: Path,
    entries: Iterable[ManifestEntry],
    annotations: Mapping[int, Annotation] | None = None,
) -> None:
    """Atomically write the manifest to ``path``.

    The document goes to a temporary file in the same directory which
    then replaces ``path``; on failure the previous file is untouched.
    """
    write_atomic(path, render_manifest(entries, annotations))


def write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
