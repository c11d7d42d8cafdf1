from app.prompts.analysis import get_analysis_prompt
from app.prompts.persona import compose_persona_instruction, get_opening_request
from app.prompts.scaffolding import get_scaffolding_prompt

__all__ = [
    "get_analysis_prompt",
    "get_scaffolding_prompt",
    "compose_persona_instruction",
    "get_opening_request",
]
