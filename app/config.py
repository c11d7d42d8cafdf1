from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    app_name: str = "Reverse Tutoring Engine"
    debug: bool = False

    # OpenAI settings
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    persona_temperature: float = 0.7
    analysis_temperature: float = 0.3
    generation_timeout_seconds: float = 30.0

    # Conversation settings
    persona_name: str = "Alex"
    default_language: str = "en"
    default_max_student_responses: int = 10

    # Application settings
    log_dir: str = "logs"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
