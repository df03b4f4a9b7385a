import os
from dotenv import load_dotenv
from pydantic_settings import BaseSettings
from functools import lru_cache

# Load .env (but env vars already set take priority)
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "../.env"))

MIN_BACKUP_TIMEOUT_BUFFER_MS = 1000


class Settings(BaseSettings):
    # Sandbox execution
    EXEC_TIMEOUT_MS: int = 5000
    BACKUP_TIMEOUT_BUFFER_MS: int = MIN_BACKUP_TIMEOUT_BUFFER_MS
    WORKER_READY_TIMEOUT_MS: int = 15000
    WORKER_ISOLATION: str = "reuse"  # "reuse" or "per_run"
    WORKER_AUTO_RESTART: bool = True
    WORKER_MEMORY_LIMIT_MB: int = 512

    # Output bounds
    MAX_LOG_LINES: int = 1000
    MAX_LINE_LENGTH: int = 10000
    MAX_OUTPUT_LINES: int = 1000

    # Verdict policy
    STATIC_CHECK: bool = False
    REVEAL_HIDDEN_TEST_DETAILS: bool = False

    # Remote compile service
    COMPILE_SERVICE_URL: str = "http://localhost:8000"
    COMPILE_MODE: str = "local"  # "local" or "piston"
    PISTON_ENDPOINT: str = "https://emkc.org/api/v2/piston/execute"
    C_COMPILER: str = "gcc"
    NODE_BINARY: str = "node"
    COMPILE_TIMEOUT_S: int = 10

    # HTTP service
    CORS_ALLOWED_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    @property
    def origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(',') if o.strip()]

    @property
    def backup_buffer_ms(self) -> int:
        """Backup timeout buffer, never below one second."""
        return max(self.BACKUP_TIMEOUT_BUFFER_MS, MIN_BACKUP_TIMEOUT_BUFFER_MS)

    @property
    def per_run_isolation(self) -> bool:
        return self.WORKER_ISOLATION.strip().lower() == "per_run"

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
