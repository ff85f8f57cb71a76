"""Exception hierarchy for workshop-sync."""


class SyncError(RuntimeError):
    """Base class for every error that aborts or fails a sync run."""


class ConfigError(SyncError):
    """Raised when configuration values are missing or invalid."""


class ManifestParseError(SyncError):
    """Raised when the manifest file is not a valid list of mod entries."""


class ManifestNotFound(SyncError):
    """Raised when the manifest file does not exist."""


class CatalogUnavailable(SyncError):
    """Raised when the catalog lookup fails or returns an unusable body."""


class MissingCatalogRecord(SyncError):
    """Raised when the catalog returned no record for a declared mod."""

    def __init__(self, mod_id: int):
        super().__init__(f"Catalog returned no details for mod {mod_id}")
        self.mod_id = mod_id


class TitleCollision(SyncError):
    """Raised when two enabled mods resolve to the same directory name."""


class DownloadFailed(SyncError):
    """Raised when a download still fails after the last retry attempt."""

    def __init__(self, url: str, last_error: BaseException):
        super().__init__(f"Download of {url} failed: {last_error}")
        self.url = url
        self.last_error = last_error


class ExtractError(SyncError):
    """Raised when an archive is corrupt, unsupported or unsafe to extract."""
