"""Reconciliation of the local mods directory against the manifest."""

import json
import shutil
import tempfile
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from catalog import CatalogRecord, fetch_details
from config import Config
from downloader import extract_archive, fetch_archive
from errors import (
    DownloadFailed,
    ExtractError,
    ManifestNotFound,
    MissingCatalogRecord,
    TitleCollision,
)
from logging_setup import get_logger
from manifest import Annotation, ManifestEntry, load_manifest, save_manifest, write_atomic


PACKAGE_ERRORS = (DownloadFailed, ExtractError)


@dataclass(frozen=True)
class PlanItem:
    """One manifest entry joined with its catalog record."""

    position: int
    entry: ManifestEntry
    record: CatalogRecord

    @property
    def label(self) -> str:
        return f"{self.entry.id} {self.record.title}"


@dataclass
class SyncResult:
    total_entries: int = 0
    materialized: list[int] = field(default_factory=list)
    kept: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    manifest_written: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


def build_plan(
    entries: Iterable[ManifestEntry],
    records: Iterable[CatalogRecord],
) -> list[PlanItem]:
    """Join manifest entries with catalog records by id, in manifest order.

    Raises:
        MissingCatalogRecord: if an entry has no record
        TitleCollision: if two enabled entries share a directory name
    """
    by_id = {record.id: record for record in records}
    directories: dict[str, int] = {}
    plan = []
    for position, entry in enumerate(entries, start=1):
        record = by_id.get(entry.id)
        if record is None:
            raise MissingCatalogRecord(entry.id)
        if not entry.disabled:
            # Directory names collide on case-insensitive filesystems too
            key = record.title_safe.casefold()
            if key in directories:
                raise TitleCollision(
                    f"Mods {directories[key]} and {entry.id} both install into "
                    f"'{record.title_safe}'"
                )
            directories[key] = entry.id
        plan.append(PlanItem(position=position, entry=entry, record=record))
    return plan


def load_state(path: Path) -> dict[str, dict]:
    """Read the prune-mode state file; a missing or unreadable file is empty."""
    try:
        state = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        get_logger().warning("Ignoring unreadable state file %s: %s", path, e)
        return {}
    if not isinstance(state, dict):
        get_logger().warning("Ignoring malformed state file %s", path)
        return {}
    return state


def state_record(record: CatalogRecord) -> dict:
    return {
        "title_safe": record.title_safe,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


class Reconciler:
    """Runs one sync: manifest, catalog, mods directory, manifest write-back."""

    def __init__(
        self,
        config: Config,
        seed: Iterable[int] | None = None,
        on_download_progress: Callable[[int, int], None] | None = None,
        on_download_complete: Callable[[], None] | None = None,
        details_fetcher: Callable[..., list[CatalogRecord]] = fetch_details,
        archive_fetcher: Callable[..., int] = fetch_archive,
        archive_extractor: Callable[..., object] = extract_archive,
    ):
        self.config = config
        self.seed = list(dict.fromkeys(seed or []))
        self.on_download_progress = on_download_progress
        self.on_download_complete = on_download_complete
        self.details_fetcher = details_fetcher
        self.archive_fetcher = archive_fetcher
        self.archive_extractor = archive_extractor
        self.logger = get_logger()

    def load_entries(self) -> list[ManifestEntry]:
        path = self.config.manifest_path
        try:
            entries = load_manifest(path)
        except ManifestNotFound:
            if self.seed:
                self.logger.info("No manifest at %s; seeding it with %d mods", path, len(self.seed))
                return [ManifestEntry(id=mod_id) for mod_id in self.seed]
            self.logger.info("No manifest at %s; starting with an empty mod list", path)
            return []

        if self.seed:
            self.logger.warning("Manifest %s exists; ignoring seed ids", path)
        return entries

    def run(self) -> SyncResult:
        entries = self.load_entries()
        result = SyncResult(total_entries=len(entries))

        records = self.details_fetcher(
            self.config.catalog_url,
            [entry.id for entry in entries],
            timeout=self.config.catalog_timeout,
        )
        plan = build_plan(entries, records)

        holding = Path(tempfile.mkdtemp(prefix="workshop-sync-"))
        try:
            kept = self.prepare_target(plan)
            self.materialize(plan, holding, kept, result)
            self.persist(plan, result)
        finally:
            shutil.rmtree(holding, ignore_errors=True)

        return result

    def prepare_target(self, plan: list[PlanItem]) -> set[int]:
        """Get the mods directory ready for materialization.

        Returns ids of packages already in place that need no download.
        """
        mods_dir = self.config.mods_dir
        if self.config.sync_mode == "reset":
            self.logger.debug("Resetting %s", mods_dir)
            try:
                shutil.rmtree(mods_dir)
            except FileNotFoundError:
                pass
            mods_dir.mkdir(parents=True)
            return set()

        return self._prune_target(plan)

    def _prune_target(self, plan: list[PlanItem]) -> set[int]:
        mods_dir = self.config.mods_dir
        mods_dir.mkdir(parents=True, exist_ok=True)
        state = load_state(self.config.state_path)
        desired = {
            item.record.title_safe: item for item in plan if not item.entry.disabled
        }

        kept: set[int] = set()
        for child in sorted(mods_dir.iterdir()):
            item = desired.get(child.name)
            if item is not None and child.is_dir() and not child.is_symlink():
                if state.get(str(item.entry.id)) == state_record(item.record) and item.record.updated_at:
                    kept.add(item.entry.id)
                    continue
                self.logger.debug("Refreshing stale %s", child.name)
            else:
                self.logger.info("Removing %s", child.name)

            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child)
            else:
                child.unlink()
        return kept

    def materialize(
        self,
        plan: list[PlanItem],
        holding: Path,
        kept: set[int],
        result: SyncResult,
    ) -> None:
        total = len(plan)
        pending = []
        for item in plan:
            prefix = f"[{item.position}/{total}]"
            if item.entry.disabled:
                self.logger.info("%s %s (disabled, skipping)", prefix, item.label)
                result.skipped.append(item.entry.id)
            elif item.entry.id in kept:
                self.logger.info("%s %s (up to date)", prefix, item.label)
                result.kept.append(item.entry.id)
            else:
                pending.append(item)

        workers = min(self.config.concurrent_downloads, len(pending)) or 1
        if workers == 1:
            for item in pending:
                try:
                    self.materialize_one(item, holding, total, show_progress=True)
                except PACKAGE_ERRORS as e:
                    self._record_failure(item, e, result)
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="workshop-sync") as pool:
                futures = {
                    pool.submit(self.materialize_one, item, holding, total): item
                    for item in pending
                }
                try:
                    for future in as_completed(futures):
                        try:
                            future.result()
                        except PACKAGE_ERRORS as e:
                            self._record_failure(futures[future], e, result)
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        failed = set(result.failed)
        result.materialized = [
            item.entry.id for item in pending if item.entry.id not in failed
        ]

    def materialize_one(
        self,
        item: PlanItem,
        holding: Path,
        total: int,
        show_progress: bool = False,
    ) -> None:
        """Download and extract one package into its own subdirectory.

        Pool workers pass ``show_progress=False`` so that only sequential
        runs draw the progress line.
        """
        self.logger.info("[%d/%d] %s", item.position, total, item.label)
        mod_dir = self.config.mods_dir / item.record.title_safe
        mod_dir.mkdir(parents=True, exist_ok=True)

        archive = holding / f"{item.entry.id}.download"
        on_progress = self.on_download_progress if show_progress else None
        try:
            self.archive_fetcher(
                item.record.download_url,
                archive,
                attempts=self.config.download_attempts,
                delay=self.config.retry_delay,
                timeout=self.config.download_timeout,
                on_progress=on_progress,
            )
        finally:
            if on_progress and self.on_download_complete:
                self.on_download_complete()
        self.archive_extractor(archive, mod_dir)
        archive.unlink(missing_ok=True)

    def _record_failure(self, item: PlanItem, error: Exception, result: SyncResult) -> None:
        if self.config.failure_policy == "fail-fast":
            raise error

        self.logger.error("Failed to install %s: %s", item.label, error)
        result.failed[item.entry.id] = str(error)
        mod_dir = self.config.mods_dir / item.record.title_safe
        if mod_dir.exists():
            shutil.rmtree(mod_dir)

    def persist(self, plan: list[PlanItem], result: SyncResult) -> None:
        annotations = {
            item.entry.id: Annotation(
                title=item.record.title,
                url=self.config.workshop_url.format(id=item.entry.id),
                updated_at=item.record.updated_at,
                error=result.failed.get(item.entry.id),
            )
            for item in plan
        }
        save_manifest(
            self.config.manifest_path,
            [item.entry for item in plan],
            annotations,
        )
        result.manifest_written = True
        self.logger.info("Wrote %d entries to %s", len(plan), self.config.manifest_path)

        if self.config.sync_mode == "prune":
            installed = set(result.materialized) | set(result.kept)
            state = {
                str(item.entry.id): state_record(item.record)
                for item in plan
                if item.entry.id in installed
            }
            write_atomic(
                self.config.state_path,
                json.dumps(state, indent=2, sort_keys=True) + "\n",
            )
