"""Prompts for scaffolding help requested by a struggling student."""

from langchain_core.prompts import ChatPromptTemplate


SCAFFOLDING_SYSTEM_PROMPT = """You create scaffolding for students who are explaining a lesson topic to a classmate.
Scaffolding helps the student think; it never explains the concept for them.

IMPORTANT CONSTRAINTS:
- ONLY provide help related to the lesson topic and subject
- If the struggle area is off-topic or inappropriate, respond with sentence starters that redirect to the lesson topic
- Do NOT provide complete answers or explanations - only scaffolding to help them think
- Keep all content age-appropriate for the student's grade level

Return ONLY a JSON object:
{{
  "sentenceStarters": [string, string, string],
  "vocabulary": [{{"word": string, "definition": string}}],
  "hint": string
}}"""

SCAFFOLDING_HUMAN_PROMPT = """A {grade_level} student is trying to explain {topic} in {subject} class but is struggling with: {struggle_area}

Key vocabulary they should use: {key_vocabulary}

Provide helpful scaffolding:
1. 3 sentence starters (in order of increasing detail)
2. Up to 5 relevant vocabulary words with simple definitions
3. 1 hint (without giving away the full answer)"""


def get_scaffolding_prompt() -> ChatPromptTemplate:
    """Get the prompt template for scaffolding generation."""
    return ChatPromptTemplate.from_messages([
        ("system", SCAFFOLDING_SYSTEM_PROMPT),
        ("human", SCAFFOLDING_HUMAN_PROMPT)
    ])
