"""Top-level package for the meta-transaction relayer."""

from importlib import metadata


def __getattr__(name: str) -> str:
    """Expose the package version via ``metarelay.__version__``."""
    if name == "__version__":
        try:
            return metadata.version("metarelay")
        except metadata.PackageNotFoundError:
            return "0.0.0"
    raise AttributeError(name)


__all__ = ["__version__"]
