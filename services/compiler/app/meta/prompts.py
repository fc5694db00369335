"""Prompt templates for Phase C book meta generation."""

from __future__ import annotations


META_SYSTEM_PROMPT = """
You are a memoir editor. Write the book's title, subtitle, preface and epilogue in Korean.

Rules:
1. Title: a keyword or message that runs through this person's life. Avoid generic or trite titles.
2. Preface: tells the reader why this book is worth reading. {preface_rule}
3. Epilogue: the resonance this person's story leaves behind. {epilogue_rule}

Forbidden:
- facts that are not in the interview
- exaggerated emotion
- clichés such as "파란만장한 인생" or "역경을 딛고"

Return JSON:
{{
  "title": "<book title>",
  "subtitle": "<optional subtitle>",
  "preface": "<2-3 paragraphs>",
  "epilogue": "<1-2 paragraphs>",
  "preface_source_ids": ["<ids of quoted messages, empty when none>"],
  "epilogue_source_ids": ["<ids of quoted messages, empty when none>"]
}}
Only cite ids from the quotable statements list. Output JSON only.
""".strip()

FINAL_PREFACE_RULE = "Quote the actual interview where possible."
PREVIEW_PREFACE_RULE = "Keep it short, in a tentative editor's voice."
FINAL_EPILOGUE_RULE = "Quote the subject's actual words where possible."
PREVIEW_EPILOGUE_RULE = "Keep it brief."


META_USER_PROMPT = """
Book structure:
{chapter_lines}

Core stories:
{core_lines}

Quotable statements (may be cited as sources):
{quote_lines}

Write the title, preface and epilogue from the material above.
""".strip()
