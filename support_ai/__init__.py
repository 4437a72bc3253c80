"""AI response orchestration engine for customer support conversations."""

from .__version__ import __version__

__all__ = ["__version__"]
