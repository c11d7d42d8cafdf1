from typing import Literal, Optional

from langgraph.graph import StateGraph, END

from app.agents.comprehension_agent import ComprehensionAnalyzer
from app.engine.topic_policy import escalate, redirect_message, removal_notice, strip_off_topic_marker
from app.graph.state import ExchangeState
from app.llm.gateway import TextGenerationGateway
from app.prompts.persona import compose_persona_instruction

PERSONA_MAX_TOKENS = 300


def should_apply_topic_policy(state: ExchangeState) -> Literal["apply_topic_policy", "assess_comprehension"]:
    """Escalate only when the reply was flagged and the topic enforces focus."""
    if state.get("off_topic_flagged") and state["conversation"].config.enforce_topic_focus:
        return "apply_topic_policy"
    return "assess_comprehension"


def build_exchange_graph(
    gateway: TextGenerationGateway,
    analyzer: ComprehensionAnalyzer,
    temperature: Optional[float] = None,
):
    """
    Compile the graph that processes one student turn.

    compose_instruction -> generate_reply -> [apply_topic_policy] -> assess_comprehension

    Nothing here writes to storage; the caller commits the final state.
    A generation failure propagates out of ``ainvoke`` unchanged.
    """

    async def compose_instruction(state: ExchangeState):
        conversation = state["conversation"]
        remaining = conversation.remaining_responses - 1
        instruction = compose_persona_instruction(
            conversation.config,
            remaining_responses=remaining,
            message_count=conversation.message_count,
            off_topic_warnings=conversation.off_topic_warnings,
            metadata=state.get("metadata"),
            persona_name=state.get("persona_name", "Alex"),
        )
        return {"instruction": instruction, "remaining_responses": remaining}

    async def generate_reply(state: ExchangeState):
        conversation = state["conversation"]
        turns = [{"role": turn.role.value, "content": turn.content} for turn in conversation.history]
        turns.append({"role": "student", "content": state["student_message"]})

        text = await gateway.generate(
            state["instruction"],
            turns,
            max_tokens=PERSONA_MAX_TOKENS,
            temperature=temperature,
        )
        reply, flagged = strip_off_topic_marker(text)
        return {
            "reply": reply or redirect_message(conversation.config.topic),
            "off_topic_flagged": flagged,
            "off_topic_warnings": conversation.off_topic_warnings,
            "off_topic_action": None,
            "blocked": False,
        }

    async def apply_topic_policy(state: ExchangeState):
        count, action, blocked = escalate(state["off_topic_warnings"])
        reply = state["reply"]
        if blocked:
            reply = removal_notice(reply, state["conversation"].config.topic)
        return {
            "off_topic_warnings": count,
            "off_topic_action": action,
            "blocked": blocked,
            "reply": reply,
        }

    async def assess_comprehension(state: ExchangeState):
        config = state["conversation"].config
        analysis = await analyzer.analyze(
            state["student_message"],
            topic=config.topic,
            key_vocabulary=config.key_vocabulary,
            grade_level=config.grade_level,
        )
        return {"analysis": analysis}

    workflow = StateGraph(ExchangeState)

    workflow.add_node("compose_instruction", compose_instruction)
    workflow.add_node("generate_reply", generate_reply)
    workflow.add_node("apply_topic_policy", apply_topic_policy)
    workflow.add_node("assess_comprehension", assess_comprehension)

    workflow.set_entry_point("compose_instruction")
    workflow.add_edge("compose_instruction", "generate_reply")
    workflow.add_conditional_edges(
        "generate_reply",
        should_apply_topic_policy,
        {
            "apply_topic_policy": "apply_topic_policy",
            "assess_comprehension": "assess_comprehension"
        }
    )
    workflow.add_edge("apply_topic_policy", "assess_comprehension")
    workflow.add_edge("assess_comprehension", END)

    return workflow.compile()
