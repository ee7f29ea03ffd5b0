"""Host/local path translation.

When codebox runs directly on the Docker host the two roots are the same
directory.  When it runs inside a container that talks to the host daemon
(Docker-in-Docker), bind-mount sources must be *host* paths while our own
file I/O must use the *local* paths.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath


def _check_parts(parts: tuple[str, ...]) -> None:
    for part in parts:
        if PurePosixPath(part).is_absolute() or ".." in PurePosixPath(part).parts:
            raise ValueError(f"Path component must be relative and stay inside the root: {part!r}")


@dataclass(frozen=True)
class PathTranslator:
    """Maps one relative path to both its bind-mount and local forms."""

    local_root: Path
    mount_root: str

    @classmethod
    def from_pair(cls, local: str, host: str = "") -> PathTranslator:
        """Build from config values; an empty ``host`` means "same as local"."""
        local_root = Path(local).expanduser().resolve()
        mount_root = host.strip() or str(local_root)
        return cls(local_root=local_root, mount_root=mount_root)

    def to_mount_path(self, *parts: str) -> str:
        """Path as the Docker daemon sees it (``-v <this>:...``)."""
        _check_parts(parts)
        return str(PurePosixPath(self.mount_root).joinpath(*parts))

    def to_local_path(self, *parts: str) -> Path:
        """Path for reading/writing from this process."""
        _check_parts(parts)
        return self.local_root.joinpath(*parts)
