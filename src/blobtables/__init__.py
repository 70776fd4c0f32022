"""blobtables - schema-validated document tables stored as whole blobs."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("blobtables")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
