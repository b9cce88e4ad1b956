"""
Resolution of the config, data and state directories.

Lookup order, resolved once and cached until ``reset()``:

1. ``~/.mergeloop/`` if it already exists (legacy flat layout; all three
   directories are the same).
2. XDG base directories when any of ``XDG_CONFIG_HOME``, ``XDG_DATA_HOME``
   or ``XDG_STATE_HOME`` is set; unset ones fall back to their XDG defaults.
3. ``~/.mergeloop/`` (flat layout).

The resolver is owned by the runtime context rather than being a module
global, so tests construct their own with a fake home and environment.
"""

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

APP_DIR_NAME = "mergeloop"
LEGACY_DIR_NAME = ".mergeloop"


@dataclass(frozen=True)
class ResolvedPaths:
    config_dir: Path
    data_dir: Path
    state_dir: Path
    legacy: bool


class PathResolver:
    """Resolves and caches the daemon's directories.

    Example:
        >>> resolver = PathResolver(home=Path("/home/dev"), environ={})
        >>> resolver.sessions_dir
        PosixPath('/home/dev/.mergeloop/sessions')
    """

    def __init__(self, home: Path | None = None, environ: Mapping[str, str] | None = None) -> None:
        self._home = home
        self._environ = environ
        self._resolved: ResolvedPaths | None = None
        self._lock = threading.Lock()

    def _resolve(self) -> ResolvedPaths:
        with self._lock:
            if self._resolved is None:
                self._resolved = self._compute()
            return self._resolved

    def _compute(self) -> ResolvedPaths:
        home = self._home or Path.home()
        environ = os.environ if self._environ is None else self._environ
        legacy_dir = home / LEGACY_DIR_NAME

        if legacy_dir.is_dir():
            return ResolvedPaths(legacy_dir, legacy_dir, legacy_dir, legacy=True)

        xdg_config = environ.get("XDG_CONFIG_HOME", "")
        xdg_data = environ.get("XDG_DATA_HOME", "")
        xdg_state = environ.get("XDG_STATE_HOME", "")
        if xdg_config or xdg_data or xdg_state:
            return ResolvedPaths(
                config_dir=Path(xdg_config or home / ".config") / APP_DIR_NAME,
                data_dir=Path(xdg_data or home / ".local" / "share") / APP_DIR_NAME,
                state_dir=Path(xdg_state or home / ".local" / "state") / APP_DIR_NAME,
                legacy=False,
            )

        return ResolvedPaths(legacy_dir, legacy_dir, legacy_dir, legacy=True)

    def reset(self) -> None:
        """Forget the cached resolution; the next access resolves again."""
        with self._lock:
            self._resolved = None

    @property
    def config_dir(self) -> Path:
        return self._resolve().config_dir

    @property
    def data_dir(self) -> Path:
        return self._resolve().data_dir

    @property
    def state_dir(self) -> Path:
        return self._resolve().state_dir

    @property
    def is_legacy(self) -> bool:
        return self._resolve().legacy

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.yaml"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def worktrees_dir(self) -> Path:
        return self.data_dir / "worktrees"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"
