"""Phase A episode selection."""

from .engine import decode_selections, fallback_selection, select_episodes

__all__ = ["select_episodes", "decode_selections", "fallback_selection"]
