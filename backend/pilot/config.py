from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    # Model collaborator (any OpenAI-compatible endpoint)
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENAI_MODEL: str = "openai/gpt-4o-mini"
    MODEL_TEMPERATURE: float = 0.2
    TOOL_CALL_ENGINE: str = "native"  # native, prompt_engineering

    # Orchestration loop
    GREETING_TIMEOUT_SECONDS: float = 2.0
    MAX_LOOP_ITERATIONS: int = 50
    PROMPT_EVENT_CHAR_LIMIT: int = 10_000

    # Operator backend: none, local, remote, adb
    OPERATOR: str = "none"
    BOX_COORDINATE_SPACE: int | None = None
    WAIT_ACTION_SECONDS: float = 5.0

    REMOTE_PROXY_URL: str = "http://localhost:8900/api/v1"
    REMOTE_SANDBOX_ID: str = ""
    REMOTE_DEVICE_ID: str = "pilot-device"
    REMOTE_DEVICE_SECRET: str = "change-me"
    REMOTE_MAX_RETRIES: int = 1
    REMOTE_RETRY_BACKOFF_SECONDS: float = 0.0

    ADB_PATH: str = "adb"
    ADB_DEVICE_ID: str = ""

    # MCP servers: {"mcpServers": {name: {command, args, env} | {url}}}
    MCP_SERVERS_FILE: Path | None = None

    ROOT_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DB_PATH: Path = ROOT_DIR / "pilot.db"

    LOG_LEVEL: str = "INFO"

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "env_prefix": "PILOT_",
    }


settings = Settings()
