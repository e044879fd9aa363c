import logging
import os
import posixpath
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING, Dict, List, Optional

from .errors import BadRequestError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .config import ServerConfig


logger = logging.getLogger("dirshare.storage")

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
DEFAULT_MAX_UPLOAD_SIZE_MB = 500
MOD_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
HIDDEN_PREFIX = "."
PLACEHOLDER = "_"


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("dirshare.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _resolve_env_path(env_key: str, default: Optional[Path] = None) -> Optional[Path]:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    if default is None:
        return None
    return default.resolve()


MAX_FILENAME_LENGTH = _safe_int_env("DIRSHARE_MAX_FILENAME_LENGTH", 255)


@dataclass(frozen=True)
class FileEntry:
    """One immediate child of a listed directory."""

    name: str
    is_dir: bool
    size: int
    mod_time: str
    rel_path: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def sanitize_filename(raw_name: str) -> str:
    """Neutralize separators and parent references in a client filename.

    Each ``/``, ``\\`` and ``..`` is replaced with an underscore rather than
    rejected, so the result can always be joined with a trusted root without
    escaping it. Names are not made unique: a second upload with the same
    sanitized name overwrites the first.
    """

    sanitized = raw_name.replace("/", PLACEHOLDER)
    sanitized = sanitized.replace("\\", PLACEHOLDER)
    sanitized = sanitized.replace("..", PLACEHOLDER)
    return sanitized


def validate_filename(filename: str) -> tuple[bool, Optional[str]]:
    """Validate sanitized filenames for length and disallowed characters."""

    if not filename or filename == ".":
        return False, "Filename cannot be empty"

    if len(filename) > MAX_FILENAME_LENGTH:
        return (
            False,
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters",
        )

    if "\x00" in filename:
        return False, "Filename contains invalid characters"

    return True, None


def _child_rel_path(relative_path: str, name: str) -> str:
    if relative_path == ".":
        return name
    return posixpath.join(relative_path, name)


def _format_mod_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime(MOD_TIME_FORMAT)


def _sort_key(entry: FileEntry) -> tuple[bool, str]:
    # Directories first, then by name.
    return (not entry.is_dir, entry.name)


def list_directory(root: str, relative_path: str) -> List[FileEntry]:
    """Return the visible children of ``root/relative_path``, sorted.

    Raises FileNotFoundError when the directory is missing and OSError for
    any other read failure.
    """

    absolute = os.path.join(root, relative_path)
    entries: List[FileEntry] = []

    with os.scandir(absolute) as iterator:
        for child in iterator:
            if child.name.startswith(HIDDEN_PREFIX):
                continue
            try:
                stat = child.stat()
                is_dir = child.is_dir()
            except FileNotFoundError:
                # Removed, or a dangling symlink.
                logger.debug(
                    "listing_entry_vanished path=%s name=%s", relative_path, child.name
                )
                continue
            entries.append(
                FileEntry(
                    name=child.name,
                    is_dir=is_dir,
                    size=stat.st_size,
                    mod_time=_format_mod_time(stat.st_mtime),
                    rel_path=_child_rel_path(relative_path, child.name),
                )
            )

    entries.sort(key=_sort_key)
    return entries


def save_upload(filename: str, stream: IO[bytes], config: "ServerConfig") -> Path:
    """Write *stream* under the configured root using a sanitized *filename*.

    An existing file with the same sanitized name is truncated and replaced.
    The copy is not atomic: if it fails mid-stream the partial file stays.
    """

    sanitized = sanitize_filename(filename or "")
    is_valid, error = validate_filename(sanitized)
    if not is_valid:
        raise BadRequestError(error)

    destination = Path(config.source_dir) / sanitized
    with destination.open("wb") as handle:
        shutil.copyfileobj(stream, handle, CHUNK_SIZE_BYTES)
        size = handle.tell()

    logger.info("upload_saved name=%r size=%d", sanitized, size)
    return destination
