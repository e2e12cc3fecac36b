"""
Access-grant capability.

Sandboxed platforms hand out opaque tokens for directories the user picked;
the catalog only stores them. Everything that creates or interprets a token
lives behind AccessGrantProvider.
"""
import logging
from pathlib import Path
from typing import Optional, Protocol

from .exceptions import AccessGrantError, ErrorKind


class AccessGrantProvider(Protocol):
    def grant_access(self, path: Path) -> bytes:
        """Returns an opaque token for `path`, or raises AccessGrantError."""
        ...

    def resolve(self, token: bytes) -> Optional[Path]:
        """Returns the directory a token grants, or None if the grant is stale."""
        ...


class PathAccessGrants:
    """Token is the UTF-8 path itself; stale once the directory is gone."""

    def grant_access(self, path: Path) -> bytes:
        path = Path(path).expanduser()
        if not path.is_dir():
            raise AccessGrantError(f"Not a directory: {path}", ErrorKind.TRANSIENT_IO)
        return str(path.resolve()).encode("utf-8")

    def resolve(self, token: bytes) -> Optional[Path]:
        try:
            path = Path(token.decode("utf-8"))
        except UnicodeDecodeError:
            logging.debug("Access token is not a UTF-8 path.")
            return None
        return path if path.is_dir() else None
