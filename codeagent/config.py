from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    AGENT_PROVIDER: str = "z.ai"
    AGENT_PROTOCOL: str = ""  # openai | anthropic; empty uses the provider default
    AGENT_MODEL: str = ""  # empty uses the provider default
    AGENT_API_KEY: str = ""

    AGENT_TEMPERATURE: float = 0.7
    AGENT_MAX_TOKENS: int = 8192

    # Base network timeout; scaled per iteration by the adapter
    AGENT_API_TIMEOUT_SECONDS: float = 180.0

    AGENT_MAX_ITERATIONS: int = 100
    AGENT_MAX_DURATION_MINUTES: float = 20.0
    AGENT_AUTO_VERIFY: bool = True
    AGENT_MAX_FIX_ATTEMPTS: int = 3

    ROOT_DIR: Path = Path(__file__).resolve().parent.parent
    HISTORY_DATABASE_URL: str = (
        f"sqlite+aiosqlite:///{Path(__file__).resolve().parent.parent / 'codeagent.db'}"
    )

    app_name: str = "codeagent"
    frontend_url: str = "http://localhost:5173"

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
