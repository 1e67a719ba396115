"""Shared state for the currently open document.

Everything the daemon knows about "what is open right now" lives in one
immutable `DocumentSnapshot`. `DocumentState` swaps whole snapshots under a
single lock, so the content and the path it came from can never be observed
out of step, and a failed load leaves the previous snapshot in place.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path

from .errors import EmptyFileError, NotFoundError, ReadFailureError, UnsupportedTypeError
from .sections import Section, split_sections

logger = logging.getLogger(__name__)

APP_DISPLAY_NAME = "mdglance"
LARGE_FILE_THRESHOLD = 500 * 1024
MARKDOWN_EXTENSIONS = frozenset({".md", ".markdown"})
PLANTUML_EXTENSIONS = frozenset({".puml", ".plantuml"})
SUPPORTED_EXTENSIONS = MARKDOWN_EXTENSIONS | PLANTUML_EXTENSIONS


class SizeClass(str, enum.Enum):
    NORMAL = "normal"
    LARGE = "large"


def classify_size(byte_size: int, no_truncate: bool = False) -> SizeClass:
    if byte_size > LARGE_FILE_THRESHOLD and not no_truncate:
        return SizeClass.LARGE
    return SizeClass.NORMAL


@dataclass(frozen=True)
class DocumentSnapshot:
    content: str = ""
    canonical_path: str = ""
    display_name: str = APP_DISPLAY_NAME
    size_class: SizeClass = SizeClass.NORMAL

    @property
    def is_open(self) -> bool:
        return bool(self.canonical_path)

    @property
    def is_large(self) -> bool:
        return self.size_class is SizeClass.LARGE

    @property
    def file_dir(self) -> str:
        if not self.canonical_path:
            return ""
        return str(Path(self.canonical_path).parent)

    @property
    def is_plantuml(self) -> bool:
        return Path(self.canonical_path).suffix.lower() in PLANTUML_EXTENSIONS

    @property
    def window_title(self) -> str:
        if not self.is_open:
            return APP_DISPLAY_NAME
        return f"{self.display_name} - {APP_DISPLAY_NAME}"


def has_supported_extension(path: str | Path) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


def _existing(path: Path) -> bool:
    # exists() raises instead of returning False when a parent is not traversable.
    try:
        return path.exists()
    except OSError as exc:
        raise ReadFailureError(f"Cannot access {path}: {exc}", path) from exc


def validate_request_path(raw: str | Path) -> Path:
    """Check a requested path before it is allowed anywhere near the loader.

    The path must exist and carry a supported extension; it is then resolved
    (absolute, symlinks followed) and the resolved target is checked again so
    a link named `*.md` cannot expose some other kind of file.
    """
    candidate = Path(raw).expanduser()
    if not _existing(candidate):
        raise NotFoundError(f"File not found: {candidate}", candidate)
    if not has_supported_extension(candidate):
        raise UnsupportedTypeError(
            f"Unsupported file type (only .md/.markdown/.puml/.plantuml allowed): {candidate}",
            candidate,
        )
    try:
        resolved = candidate.resolve(strict=True)
    except OSError as exc:
        raise NotFoundError(f"Could not resolve path {candidate}: {exc}", candidate) from exc
    if not has_supported_extension(resolved):
        raise UnsupportedTypeError(f"Link target is not a supported document: {resolved}", resolved)
    return resolved


def load_document(path: str | Path, *, no_truncate: bool = False) -> DocumentSnapshot:
    """Read a file into a fresh snapshot without touching any shared state."""
    file_path = Path(path).expanduser()
    if not _existing(file_path):
        raise NotFoundError(f"File not found: {file_path}", file_path)
    try:
        byte_size = file_path.stat().st_size
        content = file_path.read_text(encoding="utf-8")
        canonical = file_path.resolve()
    except FileNotFoundError as exc:
        # Removed between the existence check and the read.
        raise NotFoundError(f"File not found: {file_path}", file_path) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ReadFailureError(f"Failed to read file: {exc}", file_path) from exc

    if not content.strip():
        raise EmptyFileError(f"File is empty: {file_path}", file_path)

    return DocumentSnapshot(
        content=content,
        canonical_path=str(canonical),
        display_name=file_path.name or APP_DISPLAY_NAME,
        size_class=classify_size(byte_size, no_truncate),
    )


ReplaceListener = Callable[[DocumentSnapshot], None]


class DocumentState:
    """Lock-guarded owner of the current `DocumentSnapshot`."""

    def __init__(self, *, no_truncate: bool = False, snapshot: DocumentSnapshot | None = None):
        self.no_truncate = no_truncate
        self._lock = threading.Lock()
        # Held across swap and notify in replace(); reentrant so a listener may open another file.
        self._notify_lock = threading.RLock()
        self._snapshot = snapshot if snapshot is not None else DocumentSnapshot()
        self._replace_listeners: list[ReplaceListener] = []

    def snapshot(self) -> DocumentSnapshot:
        with self._lock:
            return self._snapshot

    def add_replace_listener(self, listener: ReplaceListener) -> None:
        self._replace_listeners.append(listener)

    def load(self, path: str | Path) -> DocumentSnapshot:
        """Initial load at daemon startup; no listeners are notified."""
        loaded = load_document(path, no_truncate=self.no_truncate)
        with self._lock:
            self._snapshot = loaded
        return loaded

    def replace(self, path: str | Path) -> DocumentSnapshot:
        """Open a different file, then tell the watcher and the window."""
        loaded = load_document(path, no_truncate=self.no_truncate)
        # Listeners must see replaces in swap order, or a slow notification
        # for an older file could retarget the watcher after a newer one.
        with self._notify_lock:
            with self._lock:
                self._snapshot = loaded
            logger.info("Opened %s", loaded.canonical_path)
            for listener in list(self._replace_listeners):
                try:
                    listener(loaded)
                except Exception:
                    logger.exception("Replace listener %r failed", listener)
        return loaded

    def open_request(self, raw_path: str | Path) -> DocumentSnapshot:
        """Validate an externally supplied path and open it."""
        return self.replace(validate_request_path(raw_path))

    def refresh_content(self, path: str | Path) -> DocumentSnapshot | None:
        """Re-read the open file after an on-disk change.

        Returns None (and changes nothing) when `path` is no longer the open
        document, which happens when a switch races a pending change event.
        Load errors propagate to the caller.
        """
        reloaded = load_document(path, no_truncate=self.no_truncate)
        with self._lock:
            current = self._snapshot
            if current.canonical_path != reloaded.canonical_path:
                return None
            updated = replace(current, content=reloaded.content, size_class=reloaded.size_class)
            self._snapshot = updated
        return updated

    def sections(self) -> list[Section]:
        """Sections of the open document, or [] when it is shown unsectioned."""
        current = self.snapshot()
        if not current.is_open or not current.is_large:
            return []
        return split_sections(current.content)
