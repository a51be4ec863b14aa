import re
from typing import Optional

SANDBOX_PREFIX = "/data/"

_TRAVERSAL = re.compile(r"\.{2,}")
_REPEATED_SLASH = re.compile(r"/{2,}")


def sanitize_path(path: Optional[str]) -> str:
    """Strip directory-traversal runs ("..", "...") and collapse repeated slashes."""
    if not path:
        return ""
    cleaned = _TRAVERSAL.sub("", path)
    return _REPEATED_SLASH.sub("/", cleaned)


def resolve_sandbox_path(path: Optional[str], prefix: str = SANDBOX_PREFIX) -> str:
    """Root a user supplied path under the sandbox prefix.

    Empty input resolves to the prefix itself, a path already under the prefix
    is kept, anything else is appended to it.
    """
    cleaned = sanitize_path(path)
    root = prefix.rstrip("/")
    if not cleaned or cleaned in (root, root + "/"):
        return prefix
    if not cleaned.startswith(prefix):
        cleaned = prefix + cleaned.lstrip("/")
    return _REPEATED_SLASH.sub("/", cleaned)
