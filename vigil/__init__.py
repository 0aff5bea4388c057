"""vigil — supervised session monitoring. Isolated workers, one violation feed."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("vigil")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
