"""Compiled book rows as persisted after Phase B2 and read back by the API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..enums import ParagraphType


class ParagraphSource(BaseModel):
    """Messages of one episode that back a compiled paragraph."""

    episode_id: str
    message_ids: list[str] = Field(default_factory=list)


class CompiledParagraph(BaseModel):
    id: Optional[str] = None
    paragraph_index: int = Field(..., ge=0)
    type: ParagraphType
    content: str
    revision: int = Field(1, ge=1)
    is_hidden: bool = False
    sources: list[ParagraphSource] = Field(default_factory=list)


class CompiledChapter(BaseModel):
    id: Optional[str] = None
    chapter_index: int = Field(..., ge=0)
    title: str
    paragraphs: list[CompiledParagraph] = Field(default_factory=list)
