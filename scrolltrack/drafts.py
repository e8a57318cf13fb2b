"""Single-slot persistence for the in-progress live session."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from scrolltrack.models import SessionDraft

logger = logging.getLogger(__name__)


class DraftStoreError(Exception):
    """Raised when a draft cannot be written or cleared."""

    pass


class DraftStore(Protocol):
    def get(self) -> SessionDraft | None: ...

    def save(self, draft: SessionDraft) -> None: ...

    def clear(self) -> None: ...


def _is_usable(draft: SessionDraft) -> bool:
    return bool(draft.package_name) and draft.start_time != 0 and draft.scroll_amount > 0


class InMemoryDraftStore:
    """Draft store kept in process memory. Useful for tests and dry runs."""

    def __init__(self) -> None:
        self._draft: SessionDraft | None = None
        self._lock = threading.Lock()
        self.save_count = 0

    def get(self) -> SessionDraft | None:
        with self._lock:
            return self._draft

    def save(self, draft: SessionDraft) -> None:
        with self._lock:
            self._draft = draft
            self.save_count += 1

    def clear(self) -> None:
        with self._lock:
            self._draft = None


class JsonDraftStore:
    """Draft store backed by a JSON file.

    Writes go to a temporary sibling and are moved into place with
    os.replace, so a crash mid-write leaves the previous draft intact.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def get(self) -> SessionDraft | None:
        """Return the stored draft, or None if absent or unreadable."""
        with self._lock:
            try:
                raw = self.path.read_text()
            except FileNotFoundError:
                return None
            except OSError as e:
                logger.error(f"Failed to read draft {self.path}: {e}")
                return None

        try:
            draft = SessionDraft.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed draft {self.path}: {e}")
            return None

        return draft if _is_usable(draft) else None

    def save(self, draft: SessionDraft) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(draft.model_dump_json())
                os.replace(tmp_path, self.path)
            except OSError as e:
                raise DraftStoreError(f"Failed to save draft to {self.path}: {e}") from e

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as e:
                raise DraftStoreError(f"Failed to clear draft {self.path}: {e}") from e
