"""Phase C meta generation."""

from .engine import collect_meta_warnings, decode_meta, fallback_meta, generate_meta

__all__ = ["generate_meta", "decode_meta", "collect_meta_warnings", "fallback_meta"]
