"""Raising the limit on open file descriptors."""

from __future__ import annotations

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

_OPEN_FILES_LIMIT = 999999


def raise_limit() -> tuple[int, int] | None:
    """Raise the soft open-file limit; return the resulting (soft, hard) limits.

    Returns None on platforms without resource limits.
    """
    if resource is None:
        return None

    _, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    resource.setrlimit(resource.RLIMIT_NOFILE, (_OPEN_FILES_LIMIT, hard))
    return resource.getrlimit(resource.RLIMIT_NOFILE)