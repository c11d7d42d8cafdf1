import asyncio

import pytest

from app.engine.conversation_engine import ConversationEngine
from app.engine.errors import (
    ConversationAlreadyExists,
    ConversationBlocked,
    ConversationNotFound,
    InvalidStudentMessage,
    LLMServiceFailure,
    MessageLimitExceeded,
    PersistenceFailure,
    ResponseLimitExceeded,
)
from app.engine.topic_policy import BLOCKED_REASON, OFF_TOPIC_MARKER
from app.models.conversation import ConversationConfig, ConversationState, ExchangeMetadata
from app.storage.store import InMemoryConversationStore
from tests.conftest import rubric_json


async def start(engine, config, student_id="student-1", session_id="session-1"):
    result = await engine.start_conversation(session_id, student_id, config)
    return result.conversation_id


@pytest.mark.asyncio
async def test_start_conversation_persists_opening_turn(engine, gateway, store, analytics, config):
    gateway.persona_replies.append("I'm so confused about photosynthesis. Can you explain it?")

    result = await engine.start_conversation("session-1", "student-1", config)

    assert result.persona == "Alex"
    assert result.message_count == 1
    assert result.ai_message.startswith("I'm so confused")

    conversation = await store.get(result.conversation_id)
    assert conversation.message_count == 1
    assert conversation.student_response_count == 0
    assert conversation.off_topic_warnings == 0
    assert [turn.role.value for turn in conversation.history] == ["ai"]
    assert conversation.state == ConversationState.CREATED

    opening = gateway.calls_of("persona")[0]
    assert opening["max_tokens"] == 200
    assert "Start by expressing confusion" in opening["instruction"]
    assert analytics.get_events(event_type="reverse_tutoring_started")[0]["session_id"] == "session-1"


@pytest.mark.asyncio
async def test_start_conversation_rejects_duplicate(engine, config):
    conversation_id = await start(engine, config)

    with pytest.raises(ConversationAlreadyExists) as exc_info:
        await engine.start_conversation("session-1", "student-1", config)

    assert exc_info.value.extra["conversation_id"] == conversation_id


@pytest.mark.asyncio
async def test_start_conversation_generation_failure_persists_nothing(engine, gateway, store, config):
    gateway.persona_error = LLMServiceFailure("timed out")

    with pytest.raises(LLMServiceFailure):
        await engine.start_conversation("session-1", "student-1", config)

    assert await store.list_for_session("session-1") == []


@pytest.mark.asyncio
async def test_continue_conversation_records_exchange(engine, gateway, store, analytics, config):
    conversation_id = await start(engine, config)
    gateway.persona_replies.append("Oh, so plants make food from sunlight? How?")
    gateway.analysis_replies.append(rubric_json(content=3, understanding=72, terms_used=["sunlight"]))

    result = await engine.continue_conversation(
        conversation_id,
        "  Plants use sunlight and chlorophyll to make glucose.  ",
        ExchangeMetadata(help_needed=False, vocabulary_used=["sunlight"]),
    )

    assert result.message_count == 3
    assert result.remaining_responses == 4
    assert result.off_topic_warning is None
    assert result.analysis.content_understanding.level == 3
    assert result.state == ConversationState.ACTIVE

    conversation = await store.get(conversation_id)
    assert len(conversation.history) == conversation.message_count == 3
    assert conversation.history[1].content == "Plants use sunlight and chlorophyll to make glucose."
    assert conversation.history[1].analysis.legacy_score.understanding_level == 72
    assert conversation.history[2].analysis is None
    assert conversation.current_understanding_level == 72
    assert conversation.version == 1

    persona_call = gateway.calls_of("persona")[-1]
    assert persona_call["turns"][-1] == {
        "role": "student",
        "content": "Plants use sunlight and chlorophyll to make glucose.",
    }
    assert persona_call["max_tokens"] == 300

    event = analytics.get_events(event_type="reverse_tutoring_exchange")[0]
    assert event["properties"]["understandingLevel"] == 72
    assert event["properties"]["vocabularyUsed"] == ["sunlight"]


@pytest.mark.asyncio
@pytest.mark.parametrize("message", ["", "   ", "\n\t"])
async def test_continue_conversation_rejects_empty_message(engine, gateway, config, message):
    conversation_id = await start(engine, config)
    calls_before = len(gateway.calls)

    with pytest.raises(InvalidStudentMessage):
        await engine.continue_conversation(conversation_id, message)

    assert len(gateway.calls) == calls_before


@pytest.mark.asyncio
async def test_continue_conversation_unknown_id(engine):
    with pytest.raises(ConversationNotFound):
        await engine.continue_conversation("missing", "Hello")


@pytest.mark.asyncio
async def test_response_budget_forces_conclusion_then_rejects(engine, gateway, store, config):
    config = config.model_copy(update={"max_student_responses": 3})
    conversation_id = await start(engine, config)

    results = []
    for _ in range(3):
        results.append(await engine.continue_conversation(conversation_id, "Plants need light."))

    assert [r.remaining_responses for r in results] == [2, 1, 0]
    instructions = [call["instruction"] for call in gateway.calls_of("persona")[1:]]
    assert "WRAP-UP" in instructions[1]
    assert "CONCLUDE NOW" in instructions[2]
    assert results[-1].state == ConversationState.CONCLUDED

    calls_before = len(gateway.calls)
    with pytest.raises(ResponseLimitExceeded):
        await engine.continue_conversation(conversation_id, "One more thing!")
    assert len(gateway.calls) == calls_before

    conversation = await store.get(conversation_id)
    assert conversation.student_response_count == 3
    assert conversation.message_count == 7


@pytest.mark.asyncio
async def test_message_ceiling_and_system_limit_guidance(engine, gateway, store, config):
    config = config.model_copy(update={"max_student_responses": 10})
    conversation_id = await start(engine, config)

    for _ in range(7):
        result = await engine.continue_conversation(conversation_id, "Chlorophyll captures light.")

    assert result.message_count == 15
    last_instruction = gateway.calls_of("persona")[-1]["instruction"]
    assert "System limit approaching" in last_instruction
    # Three responses were still left, so no per-student wrap-up on that turn.
    assert "WRAP-UP" not in last_instruction
    assert result.state == ConversationState.CONCLUDED

    calls_before = len(gateway.calls)
    with pytest.raises(MessageLimitExceeded):
        await engine.continue_conversation(conversation_id, "Wait, there's more!")
    assert len(gateway.calls) == calls_before

    conversation = await store.get(conversation_id)
    assert conversation.message_count == 15
    assert conversation.student_response_count == 7


@pytest.mark.asyncio
async def test_three_off_topic_replies_remove_student(engine, gateway, store, analytics, config):
    conversation_id = await start(engine, config)
    gateway.persona_replies.extend([
        f"{OFF_TOPIC_MARKER} Let's get back to photosynthesis!",
        f"{OFF_TOPIC_MARKER} Please, let's focus on photosynthesis.",
        f"{OFF_TOPIC_MARKER} We really need to stick to photosynthesis.",
    ])

    actions = []
    warnings = []
    for message in ["Did you see the game?", "What's for lunch?", "Let's talk about games."]:
        result = await engine.continue_conversation(conversation_id, message)
        actions.append(result.off_topic_warning.action)
        warnings.append(result.off_topic_warning.count)
        assert OFF_TOPIC_MARKER not in result.ai_message

    assert actions == ["warning", "final_warning", "removed"]
    assert warnings == [1, 2, 3]
    assert result.is_blocked is True
    assert result.state == ConversationState.BLOCKED
    assert "end our conversation" in result.ai_message

    conversation = await store.get(conversation_id)
    assert conversation.is_blocked is True
    assert conversation.blocked_reason == BLOCKED_REASON
    assert conversation.blocked_at is not None
    assert analytics.get_events(event_type="reverse_tutoring_blocked")

    with pytest.raises(ConversationBlocked):
        await engine.continue_conversation(conversation_id, "Okay, photosynthesis now.")
    with pytest.raises(ConversationBlocked):
        await engine.get_scaffolding(conversation_id)
    with pytest.raises(ConversationBlocked):
        await engine.start_conversation("session-1", "student-1", config)

    assert (await store.get(conversation_id)).off_topic_warnings == 3


@pytest.mark.asyncio
async def test_final_warning_instruction_after_two_strikes(engine, gateway, config):
    conversation_id = await start(engine, config)
    gateway.persona_replies.extend([f"{OFF_TOPIC_MARKER} Back to plants!", f"{OFF_TOPIC_MARKER} Plants, please!"])

    await engine.continue_conversation(conversation_id, "Video games?")
    await engine.continue_conversation(conversation_id, "Movies?")
    await engine.continue_conversation(conversation_id, "Fine. Plants use light.")

    assert "FINAL WARNING" in gateway.calls_of("persona")[-1]["instruction"]


@pytest.mark.asyncio
async def test_off_topic_marker_ignored_without_enforcement(engine, gateway, store, config):
    config = config.model_copy(update={"enforce_topic_focus": False})
    conversation_id = await start(engine, config)
    gateway.persona_replies.append(f"{OFF_TOPIC_MARKER} Sure, but what about plants?")

    result = await engine.continue_conversation(conversation_id, "Do you like pizza?")

    assert result.off_topic_warning is None
    assert result.ai_message == "Sure, but what about plants?"
    assert (await store.get(conversation_id)).off_topic_warnings == 0
    assert "OFF-TOPIC DETECTION" not in gateway.calls_of("persona")[-1]["instruction"]


@pytest.mark.asyncio
async def test_marker_only_counts_at_start_of_reply(engine, gateway, config):
    conversation_id = await start(engine, config)
    gateway.persona_replies.append(f"I saw {OFF_TOPIC_MARKER} somewhere. What is chlorophyll?")

    result = await engine.continue_conversation(conversation_id, "Chlorophyll is green.")

    assert result.off_topic_warning is None
    assert OFF_TOPIC_MARKER in result.ai_message


@pytest.mark.asyncio
async def test_bare_marker_reply_is_replaced_with_redirect(engine, gateway, config):
    conversation_id = await start(engine, config)
    gateway.persona_replies.append(OFF_TOPIC_MARKER)

    result = await engine.continue_conversation(conversation_id, "Let's talk about cars.")

    assert result.off_topic_warning.action == "warning"
    assert "Photosynthesis" in result.ai_message


@pytest.mark.asyncio
async def test_generation_failure_leaves_conversation_unchanged(engine, gateway, store, config):
    conversation_id = await start(engine, config)
    gateway.persona_error = LLMServiceFailure("Text generation timed out after 30.0s")

    with pytest.raises(LLMServiceFailure):
        await engine.continue_conversation(conversation_id, "Plants make sugar.")

    conversation = await store.get(conversation_id)
    assert conversation.message_count == 1
    assert conversation.student_response_count == 0
    assert len(conversation.history) == 1
    assert conversation.version == 0


@pytest.mark.asyncio
async def test_analysis_failure_degrades_instead_of_failing(engine, gateway, analytics, config):
    conversation_id = await start(engine, config)
    gateway.analysis_error = LLMServiceFailure("analysis timed out")

    result = await engine.continue_conversation(conversation_id, "Plants make sugar.")

    assert result.analysis.degraded is True
    assert result.analysis.legacy_score.understanding_level == 50
    assert result.message_count == 3
    assert analytics.get_events(event_type="reverse_tutoring_exchange")[0]["properties"]["analysisDegraded"] is True


@pytest.mark.asyncio
async def test_concurrent_turns_on_one_conversation_serialize(engine, store, config):
    conversation_id = await start(engine, config)

    first, second = await asyncio.gather(
        engine.continue_conversation(conversation_id, "Plants use light."),
        engine.continue_conversation(conversation_id, "They also need water."),
    )

    assert sorted([first.message_count, second.message_count]) == [3, 5]
    conversation = await store.get(conversation_id)
    assert conversation.message_count == 5
    assert conversation.student_response_count == 2
    assert len(conversation.history) == 5
    assert conversation.version == 2
    assert engine._locks == {}
    assert engine._lock_users == {}


@pytest.mark.asyncio
async def test_turn_locks_are_released_after_every_outcome(engine, gateway, config):
    for i in range(50):
        with pytest.raises(ConversationNotFound):
            await engine.continue_conversation(f"missing-{i}", "Hello?")
    assert engine._locks == {}

    conversation_id = await start(engine, config)
    gateway.persona_error = LLMServiceFailure("timed out")
    with pytest.raises(LLMServiceFailure):
        await engine.continue_conversation(conversation_id, "Plants use light.")
    gateway.persona_error = None
    await engine.continue_conversation(conversation_id, "Plants use light.")

    assert engine._locks == {}
    assert engine._lock_users == {}


class FailingRegistrationStore(InMemoryConversationStore):
    def __init__(self):
        super().__init__()
        self.registration_error = RuntimeError("connection reset")

    async def register_student(self, session_id, student_id, student_name):
        if self.registration_error:
            raise self.registration_error
        await super().register_student(session_id, student_id, student_name)


@pytest.mark.asyncio
async def test_failed_name_registration_leaves_no_conversation(gateway, analytics, config):
    store = FailingRegistrationStore()
    engine = ConversationEngine(gateway=gateway, store=store, analytics=analytics)

    with pytest.raises(PersistenceFailure):
        await engine.start_conversation("session-1", "student-1", config, student_name="Maya")

    assert await store.list_for_session("session-1") == []
    assert analytics.get_events(event_type="reverse_tutoring_started") == []

    store.registration_error = None
    result = await engine.start_conversation("session-1", "student-1", config, student_name="Maya")

    assert (await store.get(result.conversation_id)).student_id == "student-1"
    assert await store.get_student_names("session-1") == {"student-1": "Maya"}


class FailingUpdateStore(InMemoryConversationStore):
    async def update(self, conversation, expected_version):
        raise RuntimeError("connection reset")


@pytest.mark.asyncio
async def test_store_failure_is_reported_as_persistence_failure(gateway, analytics, config):
    store = FailingUpdateStore()
    engine = ConversationEngine(gateway=gateway, store=store, analytics=analytics)
    conversation_id = await start(engine, config)

    with pytest.raises(PersistenceFailure):
        await engine.continue_conversation(conversation_id, "Plants make sugar.")

    assert (await store.get(conversation_id)).message_count == 1
    assert analytics.get_events(event_type="reverse_tutoring_exchange") == []


@pytest.mark.asyncio
async def test_counters_stay_within_bounds(engine, store, config):
    config = config.model_copy(update={"max_student_responses": 10})
    conversation_id = await start(engine, config)

    for _ in range(12):
        try:
            await engine.continue_conversation(conversation_id, "Light becomes chemical energy.")
        except MessageLimitExceeded:
            pass
        conversation = await store.get(conversation_id)
        assert conversation.message_count <= 15
        assert conversation.student_response_count <= config.max_student_responses


@pytest.mark.asyncio
async def test_completed_event_emitted_when_budget_is_spent(engine, analytics, config):
    config = config.model_copy(update={"max_student_responses": 1})
    conversation_id = await start(engine, config)

    await engine.continue_conversation(conversation_id, "Plants turn light into sugar.")

    completed = analytics.get_events(event_type="reverse_tutoring_completed")
    assert len(completed) == 1
    assert completed[0]["properties"]["studentResponses"] == 1


@pytest.mark.asyncio
async def test_get_scaffolding(engine, gateway, analytics, config):
    conversation_id = await start(engine, config)
    gateway.scaffolding_replies.append(
        'Here you go: {"sentenceStarters": ["Plants need...", "Chlorophyll is..."], '
        '"vocabulary": [{"word": "glucose", "definition": "a sugar"}], "hint": "Think about leaves."}'
    )

    scaffolding = await engine.get_scaffolding(conversation_id, "what chlorophyll does")

    assert len(scaffolding.sentence_starters) == 3
    assert scaffolding.sentence_starters[:2] == ["Plants need...", "Chlorophyll is..."]
    assert scaffolding.vocabulary[0].word == "glucose"
    assert scaffolding.hint == "Think about leaves."
    assert "what chlorophyll does" in gateway.calls_of("scaffolding")[0]["turns"][0]["content"]
    assert analytics.get_events(event_type="reverse_tutoring_help_requested")


@pytest.mark.asyncio
async def test_get_scaffolding_falls_back_on_unreadable_output(engine, gateway, config):
    conversation_id = await start(engine, config)
    gateway.scaffolding_replies.append("Sorry, I can't help with that.")

    scaffolding = await engine.get_scaffolding(conversation_id)

    assert len(scaffolding.sentence_starters) == 3
    assert [hint.word for hint in scaffolding.vocabulary] == ["chlorophyll", "glucose", "sunlight"]
    assert scaffolding.hint


@pytest.mark.asyncio
async def test_get_scaffolding_propagates_generation_failure(engine, gateway, config):
    conversation_id = await start(engine, config)
    gateway.scaffolding_error = LLMServiceFailure("down")

    with pytest.raises(LLMServiceFailure):
        await engine.get_scaffolding(conversation_id)


@pytest.mark.asyncio
async def test_transcript_joins_student_name(engine, store, config):
    result = await engine.start_conversation("session-1", "student-1", config, student_name="Maya")
    await engine.continue_conversation(result.conversation_id, "Plants use light.")
    other = await start(engine, config, student_id="student-2")

    transcript = await engine.get_conversation_transcript(result.conversation_id)
    anonymous = await engine.get_conversation_transcript(other)

    assert transcript.student_name == "Maya"
    assert transcript.topic == "Photosynthesis"
    assert transcript.key_vocabulary == ["chlorophyll", "glucose", "sunlight"]
    assert [turn.role.value for turn in transcript.transcript] == ["ai", "student", "ai"]
    assert anonymous.student_name == "Unknown Student"


@pytest.mark.asyncio
async def test_get_student_conversation(engine, config):
    conversation_id = await start(engine, config)

    conversation = await engine.get_student_conversation("session-1", "student-1", "Photosynthesis")

    assert conversation.conversation_id == conversation_id
    with pytest.raises(ConversationNotFound):
        await engine.get_student_conversation("session-1", "student-1", "Mitosis")


def test_config_vocabulary_is_an_ordered_set():
    config = ConversationConfig(topic=" Cells ", key_vocabulary=['"nucleus"', "membrane", "Nucleus", " ", "'cytoplasm'"])

    assert config.topic == "Cells"
    assert config.key_vocabulary == ["nucleus", "membrane", "cytoplasm"]
