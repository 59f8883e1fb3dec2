"""
Tests for memory extraction, add/merge decisions and bank mutations.
"""

import pytest

from rmm_memory.consolidation.actions import add_memory, merge_memory
from rmm_memory.consolidation.extraction import (
    extract_memories,
    format_session,
    group_turns,
    parse_extraction_output,
)
from rmm_memory.consolidation.prompts import (
    NO_TRAIT,
    extraction_prompt,
    format_memories,
    update_memory_prompt,
)
from rmm_memory.consolidation.update import (
    UpdateAction,
    find_similar_memories,
    parse_update_actions,
    process_memory_update,
)
from rmm_memory.models.buffer import BufferedMessage, MessageRole
from rmm_memory.models.memory import MemoryEntry, make_memory_id

from fakes import (
    FailingVectorStore,
    RecordingVectorStore,
    ScriptedChatModel,
    extraction_json,
    reflection_model,
)


def human(content: str) -> BufferedMessage:
    return BufferedMessage(role=MessageRole.HUMAN, content=content)


def ai(content: str) -> BufferedMessage:
    return BufferedMessage(role=MessageRole.AI, content=content)


@pytest.fixture
def session():
    return [
        human("I went hiking in the Alps last week."),
        ai("That sounds amazing! How was the weather?"),
        BufferedMessage(role=MessageRole.SYSTEM, content="ignored"),
        human("Sunny. I also started learning the violin."),
        ai("Nice, how is it going?"),
    ]


def entry(memory_id: str, summary: str, **kwargs) -> MemoryEntry:
    return MemoryEntry(id=memory_id, session_id="s1", topic_summary=summary, **kwargs)


class TestSessionFormatting:
    """Tests for grouping and rendering turns."""

    def test_group_turns(self, session):
        turns = group_turns(session)

        assert len(turns) == 2
        assert [m.content for m in turns[1]] == [
            "Sunny. I also started learning the violin.",
            "Nice, how is it going?",
        ]

    def test_leading_ai_message_opens_a_turn(self):
        assert len(group_turns([ai("Welcome back"), human("Thanks")])) == 2

    def test_format_session(self, session):
        text = format_session(group_turns(session))

        assert text.startswith("* Turn 0:\n  – SPEAKER_1: I went hiking")
        assert "* Turn 1:" in text
        assert "SPEAKER_2: Nice, how is it going?" in text
        assert "ignored" not in text


class TestParseExtractionOutput:
    """Tests for parsing the extraction model's answer."""

    def test_plain_json(self):
        items = parse_extraction_output(extraction_json(("SPEAKER_1 hikes", [0])))

        assert len(items) == 1
        assert items[0].summary == "SPEAKER_1 hikes"
        assert items[0].reference == [0]

    def test_fenced_json(self):
        text = "```json\n" + extraction_json(("SPEAKER_1 hikes", [0])) + "\n```"
        assert len(parse_extraction_output(text)) == 1

    def test_json_inside_prose(self):
        text = "Sure! " + extraction_json(("SPEAKER_1 hikes", [0])) + " Hope that helps."
        assert len(parse_extraction_output(text)) == 1

    def test_no_trait(self):
        assert parse_extraction_output(f"  {NO_TRAIT} ") == []

    def test_not_json(self):
        assert parse_extraction_output("I could not find anything") is None

    def test_wrong_structure(self):
        assert parse_extraction_output('{"memories": []}') is None


class TestExtractMemories:
    """Tests for per-speaker memory extraction."""

    @pytest.mark.asyncio
    async def test_extracts_candidates(self, session):
        model = reflection_model(extraction_json(("SPEAKER_1 hiked in the Alps", [0])))

        memories = await extract_memories(session, model, "speaker_1", session_id="u1:100")

        assert len(memories) == 1
        memory = memories[0]
        assert memory.session_id == "u1:100"
        assert memory.turn_references == [0]
        assert memory.raw_dialogue == (
            "SPEAKER_1: I went hiking in the Alps last week.\n"
            "SPEAKER_2: That sounds amazing! How was the weather?"
        )
        assert memory.id == make_memory_id("u1:100", "SPEAKER_1", "SPEAKER_1 hiked in the Alps")
        assert "SPEAKER_1: I went hiking" in model.prompts[0]

    @pytest.mark.asyncio
    async def test_ids_are_stable_across_runs(self, session):
        model = reflection_model(extraction_json(("SPEAKER_1 plays violin", [1])))

        first = await extract_memories(session, model, session_id="u1:100")
        second = await extract_memories(session, model, session_id="u1:100")

        assert [m.id for m in first] == [m.id for m in second]

    @pytest.mark.asyncio
    async def test_speakers_get_distinct_ids(self, session):
        model = reflection_model(extraction_json(("They like the outdoors", [0])))

        first = await extract_memories(session, model, "speaker_1", session_id="s")
        second = await extract_memories(session, model, "speaker_2", session_id="s")

        assert first[0].id != second[0].id
        assert "personal summaries of SPEAKER_2" in model.prompts[1]

    @pytest.mark.asyncio
    async def test_out_of_range_references_dropped(self, session):
        model = reflection_model(extraction_json(("SPEAKER_1 plays violin", [1, 9])))

        memories = await extract_memories(session, model, session_id="s")

        assert memories[0].turn_references == [1]

    @pytest.mark.asyncio
    async def test_no_valid_references_fall_back_to_summary(self, session):
        model = reflection_model(extraction_json(("SPEAKER_1 plays violin", [9])))

        memories = await extract_memories(session, model, session_id="s")

        assert memories[0].raw_dialogue == "SPEAKER_1 plays violin"

    @pytest.mark.asyncio
    async def test_no_trait(self, session):
        assert await extract_memories(session, reflection_model(NO_TRAIT), session_id="s") == []

    @pytest.mark.asyncio
    async def test_empty_session_skips_model(self):
        model = reflection_model(NO_TRAIT)

        assert await extract_memories([], model) == []
        assert model.prompts == []

    @pytest.mark.asyncio
    async def test_model_failure(self, session):
        def fail(prompt):
            raise RuntimeError("model down")

        assert await extract_memories(session, ScriptedChatModel(fail), session_id="s") is None

    @pytest.mark.asyncio
    async def test_unparseable_answer(self, session):
        assert await extract_memories(session, reflection_model("no idea"), session_id="s") is None

    @pytest.mark.asyncio
    async def test_session_id_generated_when_missing(self, session):
        model = reflection_model(extraction_json(("SPEAKER_1 hikes", [0])))

        memories = await extract_memories(session, model)

        assert memories[0].session_id


class TestPrompts:
    """Tests for prompt rendering."""

    def test_extraction_prompt_unknown_speaker(self):
        with pytest.raises(ValueError):
            extraction_prompt("SPEAKER_3", "* Turn 0:")

    def test_dialogue_with_braces_is_kept(self):
        prompt = extraction_prompt("SPEAKER_1", "* Turn 0:\n  – SPEAKER_1: my {json} file")
        assert "my {json} file" in prompt

    def test_update_prompt_is_json(self):
        prompt = update_memory_prompt(["SPEAKER_1 hikes"], "SPEAKER_1 climbs")

        assert '{"history_summaries": ["SPEAKER_1 hikes"]}' in prompt
        assert '{"new_summary": "SPEAKER_1 climbs"}' in prompt

    def test_format_memories(self):
        block = format_memories(
            [
                ("SPEAKER_1 hikes", [("SPEAKER_1", "I love hiking")]),
                ("SPEAKER_1 plays violin", []),
            ]
        )

        assert block.startswith("<memories>\n")
        assert "– Memory [0]: SPEAKER_1 hikes\n    SPEAKER_1: I love hiking" in block
        assert "– Memory [1]: SPEAKER_1 plays violin" in block
        assert block.endswith("</memories>")

    def test_format_no_memories(self):
        assert format_memories([]) == ""


class TestParseUpdateActions:
    """Tests for parsing Add()/Merge() lines."""

    def test_add(self):
        assert parse_update_actions("Add()", 2) == [UpdateAction.add()]

    def test_merge(self):
        actions = parse_update_actions("Merge(1, SPEAKER_1 hikes every weekend)", 2)
        assert actions == [UpdateAction.merge(1, "SPEAKER_1 hikes every weekend")]

    def test_multiple_lines_and_noise(self):
        output = "Here you go:\nMerge(0, A merged)\n  Add()  \nMerge(x, bad)"
        assert parse_update_actions(output, 1) == [
            UpdateAction.merge(0, "A merged"),
            UpdateAction.add(),
        ]

    def test_out_of_range_merge_ignored(self):
        assert parse_update_actions("Merge(3, summary)", 2) == []


class TestActions:
    """Tests for add and merge against vector stores."""

    @pytest.mark.asyncio
    async def test_add_memory(self, vector_store):
        memory = entry("m1", "SPEAKER_1 hikes", raw_dialogue="SPEAKER_1: I hike")

        assert await add_memory(memory, vector_store)

        [doc] = await vector_store.aget_by_ids(["m1"])
        assert doc.page_content == "SPEAKER_1 hikes"
        assert doc.metadata["raw_dialogue"] == "SPEAKER_1: I hike"

    @pytest.mark.asyncio
    async def test_add_failure(self):
        assert not await add_memory(entry("m1", "a"), FailingVectorStore())

    @pytest.mark.asyncio
    async def test_merge_replaces_under_same_id(self, vector_store):
        original = entry("m1", "SPEAKER_1 hikes", turn_references=[0], timestamp=1)
        await add_memory(original, vector_store)

        assert await merge_memory(original, "SPEAKER_1 hikes every weekend", vector_store)

        docs = await vector_store.aget_by_ids(["m1"])
        assert len(docs) == 1
        assert docs[0].page_content == "SPEAKER_1 hikes every weekend"
        assert docs[0].metadata["turn_references"] == [0]
        assert docs[0].metadata["timestamp"] > 1

    @pytest.mark.asyncio
    async def test_merge_without_delete_support(self):
        """Test that a store without adelete still receives the merged document."""
        store = RecordingVectorStore()
        original = entry("m1", "SPEAKER_1 hikes")

        assert await merge_memory(original, "SPEAKER_1 hikes often", store)

        assert store.add_calls == [["m1"]]
        assert store.documents[0].page_content == "SPEAKER_1 hikes often"
        assert store.documents[0].metadata["raw_dialogue"] == "SPEAKER_1 hikes often"

    @pytest.mark.asyncio
    async def test_merge_failing_delete_still_adds(self):
        class DeleteFails(RecordingVectorStore):
            async def adelete(self, ids=None, **kwargs):
                raise RuntimeError("delete unsupported")

        store = DeleteFails()
        assert await merge_memory(entry("m1", "a"), "a and b", store)
        assert len(store.documents) == 1

    @pytest.mark.asyncio
    async def test_merge_empty_summary_refused(self):
        store = RecordingVectorStore()

        assert not await merge_memory(entry("m1", "a"), "   ", store)
        assert store.documents == []


class TestProcessMemoryUpdate:
    """Tests for committing one candidate."""

    @pytest.mark.asyncio
    async def test_empty_bank_adds_without_asking(self, vector_store):
        model = reflection_model(NO_TRAIT, update="Merge(0, should not be used)")

        result = await process_memory_update(entry("m1", "SPEAKER_1 hikes"), vector_store, model)

        assert result.added == ["m1"]
        assert result.ok
        assert model.prompts == []

    @pytest.mark.asyncio
    async def test_merge_into_existing(self, vector_store):
        await add_memory(entry("old", "SPEAKER_1 enjoys hiking"), vector_store)
        model = reflection_model(NO_TRAIT, update="Merge(0, SPEAKER_1 enjoys hiking in the Alps)")

        result = await process_memory_update(entry("new", "SPEAKER_1 hiked the Alps"), vector_store, model)

        assert result.merged == ["old"]
        assert result.added == []
        assert await vector_store.aget_by_ids(["new"]) == []
        [doc] = await vector_store.aget_by_ids(["old"])
        assert doc.page_content == "SPEAKER_1 enjoys hiking in the Alps"

    @pytest.mark.asyncio
    async def test_add_decision(self, vector_store):
        await add_memory(entry("old", "SPEAKER_1 enjoys hiking"), vector_store)

        result = await process_memory_update(
            entry("new", "SPEAKER_1 owns a cat"), vector_store, reflection_model(NO_TRAIT, update="Add()")
        )

        assert result.added == ["new"]
        assert len(await vector_store.aget_by_ids(["old", "new"])) == 2

    @pytest.mark.asyncio
    async def test_decision_failure_falls_back_to_add(self, vector_store):
        await add_memory(entry("old", "SPEAKER_1 enjoys hiking"), vector_store)

        def fail(prompt):
            raise RuntimeError("model down")

        result = await process_memory_update(entry("new", "SPEAKER_1 hikes"), vector_store, ScriptedChatModel(fail))

        assert result.added == ["new"]

    @pytest.mark.asyncio
    async def test_duplicate_merge_targets(self, vector_store):
        await add_memory(entry("old", "SPEAKER_1 enjoys hiking"), vector_store)
        model = reflection_model(NO_TRAIT, update="Merge(0, first merge)\nMerge(0, second merge)")

        result = await process_memory_update(entry("new", "SPEAKER_1 hikes"), vector_store, model)

        assert result.merged == ["old"]
        [doc] = await vector_store.aget_by_ids(["old"])
        assert doc.page_content == "first merge"

    @pytest.mark.asyncio
    async def test_already_stored_candidate_is_skipped(self, vector_store):
        """Test that replaying a committed candidate is a no-op."""
        memory = entry("m1", "SPEAKER_1 hikes")
        await add_memory(memory, vector_store)
        model = reflection_model(NO_TRAIT, update="Merge(0, changed)")

        result = await process_memory_update(memory, vector_store, model)

        assert result.skipped
        assert model.prompts == []
        [doc] = await vector_store.aget_by_ids(["m1"])
        assert doc.page_content == "SPEAKER_1 hikes"

    @pytest.mark.asyncio
    async def test_write_failure_reported(self):
        result = await process_memory_update(entry("m1", "a"), FailingVectorStore(), reflection_model(NO_TRAIT))
        assert not result.ok

    @pytest.mark.asyncio
    async def test_similarity_failure_treated_as_new(self):
        assert await find_similar_memories(entry("m1", "a"), FailingVectorStore()) == []
