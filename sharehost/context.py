from dataclasses import dataclass, field
from typing import Any, Optional

from flask import current_app

from .config import Settings
from .storage import BlobStore, Database

EXTENSION_KEY = "sharehost"


@dataclass
class ShareContext:
    """Everything a request, CLI command or sweep needs, built once at startup."""

    settings: Settings
    db: Database
    blobs: BlobStore
    scheduler: Optional[Any] = field(default=None, repr=False)
    limiter: Optional[Any] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ShareContext":
        return cls(
            settings=settings,
            db=Database(settings.database_path),
            blobs=BlobStore(settings.uploads_dir),
        )

    def init(self) -> None:
        self.blobs.ensure_directories()
        self.db.init_schema()

    def share_url(self, key: str) -> str:
        return f"{self.settings.base_url}/{key}"

    def blob_url(self, filename: str, temporary: bool) -> str:
        return f"{self.settings.base_url}{self.blobs.url_path(filename, temporary)}"


def get_context() -> ShareContext:
    """Return the context of the current Flask application."""
    return current_app.extensions[EXTENSION_KEY]
