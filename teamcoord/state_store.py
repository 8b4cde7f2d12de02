"""
State Store Module for Team Coordination

Atomic, file-backed read/modify/write of the single shared JSON document that
holds every registry (agents, tasks, totals).

Design notes:
- The document is never edited in place. Each write goes to a sibling temp
  file which is fsynced and then moved over the document with os.replace,
  so readers see either the old or the new document, never a torn one.
- There is no lock file. Concurrent updates from independent processes are
  last-writer-wins; workers only mutate their own agent record and tasks
  they own, so conflicting writes to the same record are not expected.
- A missing, unreadable or schema-invalid document reads as an empty state.
"""

import json
import os
import shutil
import logging
import tempfile
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from . import config
from .errors import CorruptState, StaleRevision
from .schemas import empty_state, normalize_state
from .timestamps import now_iso

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "team-state.json"

__all__ = [
    'STATE_FILE_NAME',
    'StateStore',
    'get_state_path',
]


def get_state_path(directory: str, state_dir: Optional[str] = None) -> str:
    """
    Get the path of the shared state document for a working directory.

    Args:
        directory: Working directory (session root)
        state_dir: Optional state directory override; defaults to config.STATE_DIR

    Returns:
        Absolute path to team-state.json
    """
    base = os.path.join(os.path.abspath(directory), state_dir or config.STATE_DIR)
    return os.path.join(base, STATE_FILE_NAME)


class StateStore:
    """
    File-backed store for the shared coordination document.

    Usage:
        store = StateStore(directory)
        state = store.read()

        def add_note(state):
            state['notes'] = 'hello'
            return state

        store.update(add_note)
    """

    def __init__(self, directory: str, state_dir: Optional[str] = None):
        self.directory = os.path.abspath(directory)
        self._path = get_state_path(self.directory, state_dir)
        self.state_dir = os.path.dirname(self._path)

    @property
    def path(self) -> str:
        return self._path

    def exists(self) -> bool:
        return os.path.exists(self._path)

    # ------------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        """
        Load and validate the document.

        Raises:
            FileNotFoundError: If the document does not exist
            CorruptState: If the document is unreadable or fails validation
        """
        try:
            with open(self._path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptState(self._path, str(e)) from e

        if not isinstance(raw, dict):
            raise CorruptState(self._path, f"expected a JSON object, got {type(raw).__name__}")

        try:
            return normalize_state(raw)
        except ValidationError as e:
            raise CorruptState(self._path, f"schema validation failed ({e.error_count()} errors)") from e

    def _read_checked(self) -> Tuple[Dict[str, Any], bool]:
        """Read the document, returning (state, was_corrupt)."""
        try:
            return self._load(), False
        except FileNotFoundError:
            logger.debug(f"No state document at {self._path}, using empty state")
            return empty_state(), False
        except CorruptState as e:
            logger.warning(f"{e}. Substituting empty state.")
            return empty_state(), True

    def read(self) -> Dict[str, Any]:
        """
        Read the shared state.

        Never raises for a missing or corrupt document; both read as a freshly
        initialized empty state.

        Returns:
            State dict with every schema field present
        """
        state, _ = self._read_checked()
        return state

    # ------------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------------

    def _backup_corrupt(self) -> None:
        if not os.path.exists(self._path):
            return
        backup_path = f"{self._path}.corrupt.{datetime.now().strftime('%Y%m%d%H%M%S%f')}"
        try:
            shutil.copy2(self._path, backup_path)
            logger.warning(f"Corrupt state document backed up to {backup_path}")
        except OSError as backup_error:
            logger.error(f"Failed to back up corrupt state document: {backup_error}")

    def _atomic_write(self, state: Dict[str, Any]) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{STATE_FILE_NAME}.", suffix=".tmp", dir=self.state_dir
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except Exception as e:
            logger.error(f"Error writing state document {self._path}: {e}")
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def _stamp(self, state: Dict[str, Any], base_revision: int) -> Dict[str, Any]:
        state['revision'] = base_revision + 1
        state['last_updated'] = now_iso()
        return state

    def write(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace the whole document.

        Args:
            state: New state; must validate against the schema

        Returns:
            The state as written (normalized, with revision and last_updated stamped)

        Raises:
            pydantic.ValidationError: If the state does not match the schema
        """
        normalized = normalize_state(state)
        self._stamp(normalized, normalized.get('revision', 0))
        self._atomic_write(normalized)
        logger.debug(f"State written: {self._path} (revision={normalized['revision']})")
        return normalized

    def update(
        self,
        updater: Callable[[Dict[str, Any]], Dict[str, Any]],
        expected_revision: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Read-modify-write the document.

        Args:
            updater: Callable that takes the current state and returns the new
                     state. Runs between the read and the write, so it must be
                     fast and must not perform network calls.
            expected_revision: Optional revision the caller based its decision
                     on. When given, the update is refused if the document has
                     moved on since.

        Returns:
            The state as written

        Raises:
            StaleRevision: If expected_revision is given and does not match
        """
        state, was_corrupt = self._read_checked()
        current_revision = state.get('revision', 0)

        if expected_revision is not None and expected_revision != current_revision:
            logger.warning(
                f"Revision guard failed: expected={expected_revision}, current={current_revision}"
            )
            raise StaleRevision(expected_revision, current_revision)

        updated = updater(state)
        if updated is None:
            raise TypeError("updater must return the new state")

        normalized = normalize_state(updated)
        self._stamp(normalized, current_revision)

        if was_corrupt:
            self._backup_corrupt()
        self._atomic_write(normalized)

        logger.debug(f"State updated: revision {current_revision} -> {normalized['revision']}")
        return normalized

    def clear(self) -> Dict[str, Any]:
        """Reset the document to an empty state. The only way records are removed."""
        previous, _ = self._read_checked()
        state = empty_state()
        self._stamp(state, previous.get('revision', 0))
        self._atomic_write(state)
        logger.info(f"State cleared: {self._path}")
        return state
