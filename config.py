from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional

load_dotenv()

SELECTORS = {
    "model_select": "#select_model",
    "message": "#message",
    "send_button": "#send-button",
    "temperature": "#temperature",
    "response": ".response",
    "copy_button": ".copyres",
    "reasoning": ".responseReasoning",
    "loading": ".loading, .typing-indicator, .waiting",
}

CATALOG_CACHE_KEY = "models_updated"


class Settings(BaseSettings):
    BASE_URL: str = "https://minitoolai.com"
    MODEL_PATHS: str = "chatGPT,deepseek,qwen,Claude-3,Gemini,grok,bytedance-seed,gpt-oss,llama"
    MODEL_CACHE_DAYS: int = 7
    DB_PATH: Path = Path("data.db")
    AUTH_TOKENS: str = "sk-default,sk-none"

    HOST: str = "0.0.0.0"
    PORT: int = 3000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"
    MAX_REQUESTS_PER_MIN: int = 12

    HEADLESS: bool = True
    USER_AGENT: Optional[str] = None

    FETCH_TIMEOUT: float = 30.0
    NAVIGATION_TIMEOUT: float = 60.0
    ELEMENT_TIMEOUT: float = 10.0
    POLL_INTERVAL: float = 0.5
    RESPONSE_TIMEOUT: float = 60.0
    IDLE_POLLS: int = 10
    SEND_RETRIES: int = 3
    SEND_RETRY_DELAY: float = 1.0
    SETTLE_DELAY: float = 0.5

    CHUNK_WORDS: int = 10
    STREAM_CHUNK_DELAY: float = 0.05

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def model_paths(self) -> list[str]:
        return [p.strip() for p in self.MODEL_PATHS.split(",") if p.strip()]

    @property
    def auth_tokens(self) -> list[str]:
        return [t.strip() for t in self.AUTH_TOKENS.split(",") if t.strip()]

    @property
    def log_level(self) -> str:
        return "debug" if self.DEBUG else self.LOG_LEVEL.lower()

    def path_for_group(self, group: str) -> Optional[str]:
        for path in self.model_paths:
            if path.lower() == group:
                return path
        return None

    def group_url(self, group: str) -> str:
        path = self.path_for_group(group)
        if path is None:
            raise KeyError(f"No configured path for group: {group}")
        return f"{self.BASE_URL.rstrip('/')}/{path}/"


settings = Settings()
