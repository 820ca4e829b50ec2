"""kbchat: knowledge-base assistant with confidence gating and human handoff."""

from .__version__ import __version__

__all__ = ["__version__"]
