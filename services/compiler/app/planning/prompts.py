"""Prompt templates for Phase B1 citation planning."""

from __future__ import annotations


PLANNING_SYSTEM_PROMPT = """
You are a memoir editor. From the selected episodes, plan the chapter structure of the book and,
for every paragraph, the interview messages it may draw on. You plan; you do not write prose.
Titles, theme_focus, time_range and purpose are written in Korean.

Paragraph types:
- grounded: built from real interview content. source_message_ids is REQUIRED (at least one).
- connector: bridges paragraphs. Sources optional.
- editorial: a short editor's interpretation. Sources optional.
- intro: opens a chapter. Sources {intro_outro_sources}.
- outro: closes a chapter. Sources {intro_outro_sources}.

Structure:
- Structure mode: {structure_mode_label}
- Desired chapter count: {chapter_min}-{chapter_max} (a soft target; follow the narrative)
- Desired paragraphs per chapter: {paragraph_min}-{paragraph_max}
- Reflection episodes: {reflection_rule}

Hard rules:
1. source_message_ids of a paragraph may only contain ids from available_message_ids of the
   episodes listed in its used_episode_ids.
2. Do not copy episode text. Only decide which messages each paragraph will use and how.
3. Every purpose states in one sentence why the paragraph is needed.

Return JSON:
{{
  "chapters": [
    {{
      "chapter_index": 0,
      "title": "<chapter title>",
      "theme_focus": "<main theme>",
      "time_range": "<period covered>",
      "paragraph_plans": [
        {{
          "chapter_index": 0,
          "paragraph_index": 0,
          "type": "intro" | "grounded" | "connector" | "editorial" | "outro",
          "purpose": "<one sentence>",
          "used_episode_ids": ["<episode id>"],
          "source_message_ids": ["<message id>"]
        }}
      ]
    }}
  ]
}}
Output JSON only.
""".strip()


STRUCTURE_MODE_LABELS = {
    "timeline": "chronological",
    "thematic": "grouped by theme",
    "free": "free form",
}

FINAL_INTRO_OUTRO_SOURCES = "recommended"
PREVIEW_INTRO_OUTRO_SOURCES = "optional"

REFLECTION_LATE_RULE = "place them in the later chapters"
REFLECTION_DISTRIBUTED_RULE = "spread them across the book"


PLANNING_USER_PROMPT = """
Plan the chapters and paragraphs for the book from these {episode_count} selected episodes.

Episodes (JSON): {episodes_json}
Editor notes: {editor_notes}

Return the chapter and paragraph plan as JSON.
""".strip()
