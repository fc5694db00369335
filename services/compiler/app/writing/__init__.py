"""Phase B2 paragraph writing."""

from .engine import build_chapter_prompt, decode_chapter_paragraphs, write_paragraphs

__all__ = ["write_paragraphs", "decode_chapter_paragraphs", "build_chapter_prompt"]
