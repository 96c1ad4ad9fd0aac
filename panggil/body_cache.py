"""Per-method cache of request bodies.

When the user switches from one method to another, the body they were
editing is remembered under the method's catalog entry, so coming back to
the method restores the edits. Only request bodies are cached, never
responses.

The cache can be persisted as a JSON object mapping entry -> body text:

    {
      "helloworld.Greeter/SayHello": "{\\n  \\"name\\": \\"Bob\\"\\n}"
    }
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional

from .types import CatalogEntry

logger = logging.getLogger(__name__)


class BodyCache:
    """In-memory body cache with optional JSON file persistence.

    Attributes:
        path: File the cache is loaded from and saved to, or None for a
            memory-only cache.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else None
        self._bodies: Dict[CatalogEntry, str] = {}

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def get(self, entry: CatalogEntry) -> str:
        """Cached body for entry, or "" if none."""
        return self._bodies.get(entry, "")

    def put(self, entry: CatalogEntry, body: str) -> None:
        self._bodies[entry] = body

    def __contains__(self, entry: object) -> bool:
        return entry in self._bodies

    def __len__(self) -> int:
        return len(self._bodies)

    def load(self) -> int:
        """Load cached bodies from the file, replacing memory contents.

        A missing file is an empty cache. Unreadable or malformed files are
        logged and ignored.

        Returns:
            Number of bodies loaded.
        """
        if not self._path or not self._path.exists():
            return 0

        try:
            with open(self._path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load body cache from {self._path}: {e}")
            return 0

        if not isinstance(data, dict):
            logger.warning(f"Invalid body cache format in {self._path} (expected object)")
            return 0

        self._bodies = {str(k): v for k, v in data.items() if isinstance(v, str)}
        logger.debug(f"Loaded {len(self._bodies)} cached bodies from {self._path}")
        return len(self._bodies)

    def save(self) -> bool:
        """Write the cache to its file, creating directories as needed.

        Returns:
            True if written, False if there is no path or the write failed.
        """
        if not self._path:
            return False

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, 'w', encoding='utf-8') as f:
                json.dump(self._bodies, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to write body cache file {self._path}: {e}")
            return False
        return True
