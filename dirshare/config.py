import logging
import os
import posixpath
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union

from .errors import InvalidDirectoryError, PathOutsideRootError
from .storage import _safe_int_env

logger = logging.getLogger("dirshare.config")

DEFAULT_PORT = "8080"
DEFAULT_SOURCE_DIR = "."
ROOT_PATH = "."


@dataclass(frozen=True)
class RootPage:
    """The control page: listing of the root plus the settings form."""


@dataclass(frozen=True)
class ServeFile:
    absolute_path: str


@dataclass(frozen=True)
class ListDirectory:
    relative_path: str


ResolvedTarget = Union[RootPage, ServeFile, ListDirectory]


class ServerConfig:
    """Process-wide server settings guarded by a single lock.

    ``port`` and ``source_dir`` may change at runtime through the control
    page; ``ip_addresses`` is fixed at construction. The lock only covers
    reading or replacing fields, never file I/O.
    """

    def __init__(
        self,
        port: str = DEFAULT_PORT,
        source_dir: str = DEFAULT_SOURCE_DIR,
        ip_addresses: Iterable[str] = (),
    ) -> None:
        self._lock = threading.RLock()
        self._port = port
        self._source_dir = source_dir
        self._ip_addresses = tuple(ip_addresses)

    @classmethod
    def from_environment(cls, ip_addresses: Iterable[str] = ()) -> "ServerConfig":
        port = str(_safe_int_env("DIRSHARE_PORT", int(DEFAULT_PORT)))
        source_dir = os.environ.get("DIRSHARE_SOURCE_DIR") or DEFAULT_SOURCE_DIR
        if not os.path.exists(source_dir):
            logger.warning(
                "Source directory %s does not exist. Using default: %s",
                source_dir,
                DEFAULT_SOURCE_DIR,
            )
            source_dir = DEFAULT_SOURCE_DIR
        return cls(port=port, source_dir=source_dir, ip_addresses=ip_addresses)

    @property
    def port(self) -> str:
        with self._lock:
            return self._port

    @property
    def source_dir(self) -> str:
        with self._lock:
            return self._source_dir

    @property
    def ip_addresses(self) -> tuple:
        return self._ip_addresses

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "port": self._port,
                "source_dir": self._source_dir,
                "ip_addresses": list(self._ip_addresses),
            }

    def apply_control(
        self, port: Optional[str] = None, directory: Optional[str] = None
    ) -> Dict[str, str]:
        """Apply a control-page submission and return the changed fields.

        Empty values are ignored. The port is taken as given. The directory
        must exist; if it does not, InvalidDirectoryError is raised and
        neither field is changed.
        """

        # Validate outside the lock; the stat is file I/O.
        if directory and not os.path.exists(directory):
            logger.warning("control_rejected reason=missing_directory directory=%r", directory)
            raise InvalidDirectoryError(directory)

        changes: Dict[str, str] = {}
        with self._lock:
            if port:
                self._port = port
                changes["port"] = port
            if directory:
                self._source_dir = directory
                changes["source_dir"] = directory

        if changes:
            logger.info(
                "control_applied %s",
                " ".join(f"{key}={value!r}" for key, value in sorted(changes.items())),
            )
        return changes


def normalize_request_path(request_path: str) -> str:
    """Strip a single leading slash; an empty path means the root."""

    if request_path.startswith("/"):
        request_path = request_path[1:]
    return request_path or ROOT_PATH


def _is_within_root(root: str, candidate: str) -> bool:
    root_abs = os.path.abspath(root)
    candidate_abs = os.path.abspath(candidate)
    try:
        return os.path.commonpath([root_abs, candidate_abs]) == root_abs
    except ValueError:
        # Different drives on Windows.
        return False


def resolve(
    request_path: str,
    config: ServerConfig,
    *,
    port: Optional[str] = None,
    directory: Optional[str] = None,
    control: bool = False,
) -> ResolvedTarget:
    """Decide how to answer *request_path* against the current root.

    A control submission (``control=True``) is only honoured for the root
    path and may raise InvalidDirectoryError. A path that normalizes to a
    location outside the root raises PathOutsideRootError.
    """

    relative_path = normalize_request_path(request_path)

    if relative_path == ROOT_PATH and control:
        config.apply_control(port=port, directory=directory)

    source_dir = config.source_dir
    absolute = os.path.normpath(os.path.join(source_dir, relative_path))
    if not _is_within_root(source_dir, absolute):
        raise PathOutsideRootError(relative_path)
    relative_path = posixpath.normpath(relative_path)

    if os.path.exists(absolute) and not os.path.isdir(absolute):
        return ServeFile(os.path.abspath(absolute))
    if relative_path == ROOT_PATH:
        return RootPage()
    return ListDirectory(relative_path)
