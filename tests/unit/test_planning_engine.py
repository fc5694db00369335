"""Tests for Phase B1 citation planning."""

import pytest

from dotting_schemas import CompilationIntent, CompileOptions, ParagraphType

from services.compiler.app.planning import create_citation_plan
from services.compiler.app.planning.engine import (
    DEFAULT_PURPOSE,
    PlanDecodeError,
    available_message_ids,
    decode_plan,
)
from tests.utils.factories import make_episodes, make_gateway, make_messages, plan_reply
from tests.utils.prompts import extract_json_block


pytestmark = pytest.mark.anyio("asyncio")


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def test_plan_counts_paragraph_types() -> None:
    gateway, provider = make_gateway(replies=[plan_reply()])
    episodes = make_episodes(3)

    plan = await create_citation_plan(
        gateway, episodes, make_messages(), CompileOptions(editor_notes="따뜻하게"), CompilationIntent.PREVIEW
    )

    assert len(plan.chapters) == 2
    assert plan.total_paragraphs == 5
    assert plan.grounded_count == 3
    assert plan.connector_count == 1
    assert plan.intro_outro_count == 1
    prompt = provider.requests[0].prompt
    assert "Editor notes: 따뜻하게" in prompt
    digest = extract_json_block(prompt, "Episodes (JSON)")
    assert digest[1]["available_message_ids"] == ["m2", "m3"]


async def test_malformed_plan_raises() -> None:
    gateway, _ = make_gateway(replies=[{"chapters": "none"}])
    with pytest.raises(PlanDecodeError):
        await create_citation_plan(
            gateway, make_episodes(1), make_messages(), CompileOptions(), CompilationIntent.FINAL
        )


def test_available_ids_drop_unknown_messages() -> None:
    episodes = make_episodes(5)
    available = available_message_ids(episodes, make_messages()[:2])
    assert available["ep-1"] == ["m1"]
    assert available["ep-2"] == ["m2"]
    assert available["ep-5"] == []


def test_decode_reindexes_and_defaults() -> None:
    chapters = decode_plan(
        {
            "chapters": [
                {"chapter_index": 7, "paragraph_plans": [{"type": "poem", "source_message_ids": ["m1", "m1", 2]}]},
                {"title": "  둘째  ", "paragraph_plans": "oops"},
            ]
        }
    )
    first = chapters[0]
    assert first.chapter_index == 0
    assert first.title == "챕터 1"
    plan = first.paragraph_plans[0]
    assert plan.type == ParagraphType.GROUNDED
    assert plan.purpose == DEFAULT_PURPOSE
    assert plan.source_message_ids == ["m1"]
    assert chapters[1].title == "둘째"
    assert chapters[1].paragraph_plans == []


def test_decode_keeps_only_selected_episodes() -> None:
    reply = {
        "chapters": [
            {
                "paragraph_plans": [
                    {"type": "grounded", "used_episode_ids": ["ep-2", "ep-9"], "source_message_ids": ["m2"]},
                    {"type": "grounded", "used_episode_ids": ["made-up"], "source_message_ids": ["m1", "m4"]},
                    {"type": "connector", "used_episode_ids": ["made-up"], "source_message_ids": []},
                ]
            }
        ]
    }

    [chapter] = decode_plan(reply, make_episodes(3))

    kept, inferred, connector = chapter.paragraph_plans
    assert kept.used_episode_ids == ["ep-2"]
    assert inferred.used_episode_ids == ["ep-1", "ep-3"]
    assert connector.used_episode_ids == []


async def test_plan_drops_episodes_outside_the_selection() -> None:
    reply = plan_reply()
    reply["chapters"][0]["paragraph_plans"][1]["used_episode_ids"] = ["ep-4"]
    gateway, _ = make_gateway(replies=[reply])

    plan = await create_citation_plan(
        gateway, make_episodes(3), make_messages(), CompileOptions(), CompilationIntent.PREVIEW
    )

    assert plan.chapters[0].paragraph_plans[1].used_episode_ids == ["ep-1"]
