"""Utility functions for MicroPython WorkBench."""

import hashlib
from pathlib import Path

# =============================================================================
# Constants for board operations
# =============================================================================

# Default serial speed of MicroPython REPLs
DEFAULT_BAUDRATE: int = 115200

# Timeout for listing/mkdir/delete tool calls (seconds)
DEFAULT_TOOL_TIMEOUT: float = 10.0

# Timeout for a single file transfer (seconds)
DEFAULT_TRANSFER_TIMEOUT: float = 60.0

# How long an operation waits for the link before giving up (seconds)
DEFAULT_LINK_TIMEOUT: float = 30.0

# Passive serial monitor timing (seconds)
DEFAULT_MONITOR_INTERVAL: float = 2.0
DEFAULT_MONITOR_WINDOW: float = 0.4

# Read size used when hashing local files
HASH_CHUNK_SIZE: int = 64 * 1024


# =============================================================================
# Path utilities
# =============================================================================


def normalize_path(path: str) -> str:
    """Normalize a relative path to the form used in snapshots.

    Backslashes become forward slashes, leading slashes and ``./`` segments
    are removed and repeated separators are collapsed. Case is preserved.

    Args:
        path: Path as reported by a local scan or the board

    Returns:
        Normalized relative path ("" for the root)

    Examples:
        >>> normalize_path("/lib/util.py")
        'lib/util.py'
        >>> normalize_path("lib\\\\sub\\\\")
        'lib/sub'
        >>> normalize_path("./main.py")
        'main.py'
    """
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".")]
    return "/".join(parts)


def parent_paths(path: str) -> list[str]:
    """Return every ancestor directory of a relative path, shallowest first.

    Examples:
        >>> parent_paths("a/b/c.py")
        ['a', 'a/b']
        >>> parent_paths("main.py")
        []
    """
    parts = normalize_path(path).split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


def path_depth(path: str) -> int:
    """Number of segments in a normalized relative path."""
    normalized = normalize_path(path)
    return normalized.count("/") + 1 if normalized else 0


def board_path(relative_path: str) -> str:
    """Convert a relative snapshot path into an absolute board path.

    Examples:
        >>> board_path("lib/util.py")
        '/lib/util.py'
        >>> board_path("")
        '/'
    """
    return "/" + normalize_path(relative_path)


# =============================================================================
# Hash and size utilities
# =============================================================================


def sha256_file(path: Path) -> str:
    """Compute the hex SHA-256 digest of a local file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 KB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    else:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
