"""Workshop catalog lookups for workshop-sync."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from downloader import safe_dirname
from errors import CatalogUnavailable
from logging_setup import get_logger


# The catalog reports per-item status; anything but 1 is missing or hidden
RESULT_OK = 1


@dataclass(frozen=True)
class CatalogRecord:
    id: int
    title: str
    title_safe: str
    download_url: str
    updated_at: datetime | None


def parse_record(item: dict) -> CatalogRecord | None:
    """Build a CatalogRecord from one response item.

    Returns None for items the catalog flags as unavailable.
    """
    if not isinstance(item, dict):
        raise CatalogUnavailable(f"Unexpected catalog item: {item!r}")
    try:
        mod_id = int(item["publishedfileid"])
    except (KeyError, TypeError, ValueError) as e:
        raise CatalogUnavailable(f"Catalog item without a valid id: {item!r}") from e

    if item.get("result", RESULT_OK) != RESULT_OK:
        get_logger().debug("Catalog reports mod %d unavailable (result=%s)", mod_id, item.get("result"))
        return None

    title = str(item.get("title") or mod_id)
    title_safe = safe_dirname(str(item.get("title_disk_safe") or title), fallback=str(mod_id))

    updated_at = None
    time_updated = item.get("time_updated")
    if time_updated:
        try:
            updated_at = datetime.fromtimestamp(int(time_updated), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise CatalogUnavailable(f"Invalid time_updated for mod {mod_id}: {time_updated!r}") from e

    return CatalogRecord(
        id=mod_id,
        title=title,
        title_safe=title_safe,
        download_url=str(item.get("file_url") or ""),
        updated_at=updated_at,
    )


def fetch_details(
    catalog_url: str,
    ids: Iterable[int],
    timeout: float = 30.0,
) -> list[CatalogRecord]:
    """Fetch catalog records for ``ids`` in one batched request.

    Response order is not guaranteed to follow request order.
    """
    id_list = sorted(set(ids))
    if not id_list:
        return []

    logger = get_logger()
    logger.debug("Requesting details for %d mods from %s", len(id_list), catalog_url)
    try:
        response = httpx.post(catalog_url, json=id_list, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPError as e:
        raise CatalogUnavailable(f"Catalog request failed: {e}") from e
    except ValueError as e:
        raise CatalogUnavailable(f"Catalog returned invalid JSON: {e}") from e

    if not isinstance(payload, list):
        raise CatalogUnavailable(
            f"Catalog response must be a list, got {type(payload).__name__}"
        )

    records = []
    for item in payload:
        record = parse_record(item)
        if record is not None:
            records.append(record)
    logger.debug("Catalog returned %d usable records", len(records))
    return records
