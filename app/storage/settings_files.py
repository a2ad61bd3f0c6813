"""Ephemeral render settings files with pin tracking and safe cleanup."""

import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

from app.jobs.models import LoopKind, RenderJob

logger = logging.getLogger(__name__)

# <prefix>-<project>-<millisecond timestamp>
EPHEMERAL_DIR_PATTERN = re.compile(r"^(loop|resume|frame|pin|pinned-loop)-.+-\d{10,}$")

_KIND_PREFIX = {
    LoopKind.FRESH: "loop",
    LoopKind.RESUME: "resume",
}


@dataclass
class SettingsFile:
    """A settings file on disk; its working directory is two levels up."""
    path: str
    pinned: bool
    created_for: Optional[str] = None  # loop_id

    @property
    def working_directory(self) -> str:
        return os.path.dirname(os.path.dirname(self.path))


@dataclass
class CleanupResult:
    """Whether a cleanup deleted anything, and why not if it did not."""
    deleted: bool
    directory: Optional[str] = None
    reason: str = ""


class SettingsLifecycleManager:
    """Writes settings snapshots and deletes the unpinned ones it no longer needs.

    At most one unpinned file is tracked at a time. Pinned files are never
    deleted automatically.
    """

    def __init__(self, base_dir: Optional[str] = None):
        if base_dir:
            self._temp_root = base_dir
        else:
            self._temp_root = os.path.join(tempfile.gettempdir(), "render_loop_settings")
        os.makedirs(self._temp_root, exist_ok=True)
        self._current_unpinned: Optional[SettingsFile] = None
        self._pinned: Set[str] = set()

    @property
    def temp_root(self) -> str:
        return self._temp_root

    @property
    def current_unpinned(self) -> Optional[SettingsFile]:
        return self._current_unpinned

    def track(self, settings_file: SettingsFile) -> None:
        if settings_file.pinned:
            self._pinned.add(os.path.abspath(settings_file.path))
        else:
            self._current_unpinned = settings_file

    def pin(self, path: str) -> SettingsFile:
        """Mark a settings file as user-kept so cleanup never touches it."""
        abs_path = os.path.abspath(path)
        self._pinned.add(abs_path)
        current = self._current_unpinned
        if current is not None and os.path.abspath(current.path) == abs_path:
            self._current_unpinned = None
        logger.info("Pinned settings file %s", abs_path)
        return SettingsFile(path=abs_path, pinned=True)

    def is_pinned(self, path: str) -> bool:
        return os.path.abspath(path) in self._pinned

    async def generate(
        self,
        job: RenderJob,
        snapshot: Dict[str, Any],
        kind: LoopKind = LoopKind.FRESH,
        loop_id: Optional[str] = None,
        pinned: bool = False,
        frame_number: Optional[int] = None,
    ) -> SettingsFile:
        """Write a settings snapshot into a fresh working directory.

        frame_number marks a single-frame render (frame-<project>-<n>-<ts>).
        """
        prefix = "pin" if pinned else _KIND_PREFIX[kind]
        name = _safe_name(job.project_name)
        if frame_number is not None and not pinned:
            prefix = "frame"
            name = f"{name}-{frame_number}"
        timestamp = int(time.time() * 1000)
        root = job.output_directory or self._temp_root
        working_dir = os.path.join(root, f"{prefix}-{name}-{timestamp}")
        path = os.path.join(working_dir, "settings", f"{prefix}-settings-{timestamp}.json")

        payload = dict(snapshot)
        payload.setdefault("workingDirectory", working_dir)

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, _write_json, path, payload)

        settings_file = SettingsFile(path=path, pinned=pinned, created_for=loop_id)
        self.track(settings_file)
        logger.info("Generated %s settings file %s", "pinned" if pinned else "unpinned", path)
        return settings_file

    async def capture_pinned(self, job: RenderJob, snapshot: Dict[str, Any]) -> SettingsFile:
        return await self.generate(job, snapshot, pinned=True)

    async def prepare_pinned_copy(
        self,
        pinned_path: str,
        job: RenderJob,
        loop_id: Optional[str] = None,
    ) -> SettingsFile:
        """Copy pinned settings into a fresh pinned-loop working directory.

        The render runs from the copy so the pinned original is never
        written to. The copy is not tracked as the current unpinned file.
        """
        timestamp = int(time.time() * 1000)
        root = job.output_directory or self._temp_root
        working_dir = os.path.join(root, f"pinned-loop-{_safe_name(job.project_name)}-{timestamp}")
        path = os.path.join(working_dir, "settings", f"pinned-settings-{timestamp}.json")

        loop = asyncio.get_event_loop()
        payload = await loop.run_in_executor(None, _read_json, pinned_path)
        payload["workingDirectory"] = working_dir
        payload["pinnedSource"] = os.path.abspath(pinned_path)
        await loop.run_in_executor(None, _write_json, path, payload)

        logger.info("Copied pinned settings %s to %s", pinned_path, path)
        return SettingsFile(path=path, pinned=False, created_for=loop_id)

    def is_ephemeral_directory(self, directory: str) -> bool:
        directory = os.path.abspath(directory)
        if EPHEMERAL_DIR_PATTERN.match(os.path.basename(directory)):
            return True
        temp_roots = {os.path.abspath(self._temp_root), os.path.abspath(tempfile.gettempdir())}
        for root in temp_roots:
            # Strictly below the root, never the root itself
            if directory != root and directory.startswith(root + os.sep):
                return True
        return False

    async def cleanup_unpinned(self, path: Optional[str]) -> CleanupResult:
        """Delete the working directory that holds an unpinned settings file.

        Refuses (deleted=False) for pinned files and for directories that do
        not look ephemeral. Never raises.
        """
        if not path:
            return CleanupResult(deleted=False, reason="no settings file to clean up")
        if self.is_pinned(path):
            return CleanupResult(deleted=False, reason="settings file is pinned")

        working_dir = os.path.dirname(os.path.dirname(os.path.abspath(path)))
        if not self.is_ephemeral_directory(working_dir):
            logger.warning("Refusing to delete %s: does not look like a temporary directory", working_dir)
            return CleanupResult(
                deleted=False,
                directory=working_dir,
                reason="directory does not appear to be temporary, skipping cleanup for safety",
            )
        if not os.path.isdir(working_dir):
            return CleanupResult(deleted=False, directory=working_dir, reason="directory no longer exists")

        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, shutil.rmtree, working_dir)
        except OSError as e:
            logger.warning("Failed to clean up unpinned settings (non-critical): %s", e)
            return CleanupResult(deleted=False, directory=working_dir, reason=str(e))

        logger.info("Deleted unpinned settings directory %s", working_dir)
        return CleanupResult(deleted=True, directory=working_dir, reason="deleted")

    async def supersede_unpinned(self) -> Optional[CleanupResult]:
        """Clean up the tracked unpinned file before a new unpinned job writes its own."""
        current = self._current_unpinned
        if current is None:
            return None
        self._current_unpinned = None
        return await self.cleanup_unpinned(current.path)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("_") or "project"


def _write_json(path: str, payload: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)


def _read_json(path: str) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"Settings file {path} does not contain a JSON object")
    return payload
