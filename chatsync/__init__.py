# =============================================================================
# chatsync - Realtime Chat Synchronization & Membership Engine
# =============================================================================
"""
chatsync - Main Package

Version is loaded from installed package metadata, falling back to
pyproject.toml when running from a source checkout.
"""

from __future__ import annotations

from pathlib import Path


def _get_version() -> str:
    """
    Get package version dynamically from installed metadata.

    Returns:
        Version string (e.g., "0.3.0")
    """
    from importlib.metadata import version, PackageNotFoundError

    try:
        return version("chatsync")
    except PackageNotFoundError:
        pass  # Not installed, read pyproject.toml

    import tomllib

    pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        with open(pyproject_path, "rb") as f:
            return tomllib.load(f)["project"]["version"]

    return "0.0.0-unknown"


__version__: str = _get_version()
__description__: str = "chatsync - realtime chat synchronization & membership engine"

__all__ = [
    "__version__",
    "__description__",
]
