"""Convert MinerU layout JSON into a self-contained Markdown document."""

from .version import __version__

__all__ = ["__version__"]
