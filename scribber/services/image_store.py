"""Ownership of the generated page images.

Every story generation gets its own session directory under the image root,
so a re-render or a new story only ever clears and rewrites files that belong
to that session. Inside a session the naming is fixed, ``story_page_{index}.png``,
and a new render overwrites the previous file for the same index.
"""
import logging
import re
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import List, Optional, Union

from scribber.core.errors import ValidationFailure

logger = logging.getLogger(__name__)

IMAGE_PREFIX = "story_page_"
IMAGE_GLOB = f"{IMAGE_PREFIX}*.png"
IMAGE_NAME_RE = re.compile(rf"^{IMAGE_PREFIX}(\d+)\.png$")
SESSION_RE = re.compile(r"^[0-9a-f]{32}$")
PUBLIC_PREFIX = "/images"


class ImageStore:
    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._latest: Optional[str] = None
        self._lock = threading.Lock()

    # ---------- sessions ----------
    def new_session(self) -> str:
        session_id = uuid.uuid4().hex
        self.session_dir(session_id).mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._latest = session_id
        return session_id

    @staticmethod
    def validate_session(session_id: str) -> str:
        if not SESSION_RE.match(session_id or ""):
            raise ValidationFailure("Invalid sessionId.")
        return session_id

    def use_session(self, session_id: Optional[str]) -> str:
        """Validate a client supplied session id, or mint a new one when missing."""
        if not session_id:
            return self.new_session()
        self.validate_session(session_id)
        self.session_dir(session_id).mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._latest = session_id
        return session_id

    def latest_session(self) -> Optional[str]:
        return self._latest

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def prune_sessions(self, max_age_seconds: int, keep: Optional[str] = None) -> int:
        cutoff = time.time() - max_age_seconds
        removed = 0
        for child in self.root.iterdir():
            if not child.is_dir() or not SESSION_RE.match(child.name) or child.name == keep:
                continue
            try:
                if child.stat().st_mtime < cutoff:
                    shutil.rmtree(child)
                    removed += 1
            except OSError as e:
                logger.warning("Could not prune session %s: %s", child.name, e)
        if removed:
            logger.info("Pruned %d stale image sessions", removed)
        return removed

    # ---------- artifacts ----------
    def next_path(self, session_id: str, index: int) -> Path:
        if index < 0:
            raise ValueError("page index must be >= 0")
        return self.session_dir(session_id) / f"{IMAGE_PREFIX}{index}.png"

    def clear_prior_artifacts(self, session_id: str) -> int:
        directory = self.session_dir(session_id)
        if not directory.is_dir():
            return 0
        deleted = 0
        for path in directory.glob(IMAGE_GLOB):
            try:
                path.unlink()
                deleted += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not delete old image %s: %s", path, e)
        logger.info("Deleted %d old images for session %s", deleted, session_id)
        return deleted

    def current_images(self, session_id: Optional[str]) -> List[Path]:
        if not session_id:
            return []
        directory = self.session_dir(session_id)
        if not directory.is_dir():
            return []
        found = []
        for path in directory.glob(IMAGE_GLOB):
            m = IMAGE_NAME_RE.match(path.name)
            if m:
                found.append((int(m.group(1)), path))
        return [p for _, p in sorted(found)]

    # ---------- public urls ----------
    def public_url(self, path: Path) -> str:
        rel = Path(path).resolve().relative_to(self.root)
        return f"{PUBLIC_PREFIX}/{rel.as_posix()}"

    def resolve(self, path_or_url: str) -> Path:
        """Turn an image url handed back by a client into a file inside the root."""
        value = (path_or_url or "").strip()
        if value.startswith(PUBLIC_PREFIX + "/"):
            candidate = self.root / value[len(PUBLIC_PREFIX) + 1:]
        else:
            candidate = Path(value)
            if not candidate.is_absolute():
                candidate = self.root / candidate
        candidate = candidate.resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValidationFailure(f"Unknown image path: {path_or_url}")
        if not IMAGE_NAME_RE.match(candidate.name) or not candidate.is_file():
            raise ValidationFailure(f"Unknown image path: {path_or_url}")
        return candidate
