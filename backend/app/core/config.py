from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # database & redis
    # Plain string so both sqlite:/// and postgresql:// URLs are accepted
    DATABASE_URL: str = "sqlite:///./strategy_evolution.db"
    REDIS_URL: str = "redis://localhost:6379/0"

    # telemetry window used by the decision engine
    EVOLUTION_METRICS_WINDOW: int = 50
    # rules other than the catastrophic one need this many episodes
    EVOLUTION_MIN_EPISODES: int = 3

    # rollout for corrective (catastrophic) outcomes; 100 = promote immediately
    EVOLUTION_DEFAULT_ROLLOUT: int = 100
    # rollout for exploratory outcomes; lower values stage a candidate
    EVOLUTION_EXPLORATORY_ROLLOUT: int = 100

    # staged candidate resolution
    EVOLUTION_AUTO_RESOLVE_CANDIDATES: bool = True
    EVOLUTION_CANDIDATE_MIN_EPISODES: int = 3

    # conflict retry (exponential backoff, bounded attempts)
    EVOLUTION_PROMOTE_MAX_ATTEMPTS: int = 3
    EVOLUTION_RETRY_BASE_SECONDS: float = 0.05
    EVOLUTION_RETRY_MAX_SECONDS: float = 2.0

    # per-topic lease: "local" (single process) or "redis" (multi-process)
    EVOLUTION_LOCK_BACKEND: str = "local"
    EVOLUTION_LOCK_TIMEOUT_SECONDS: float = 30.0

    # model names the execution collaborator runs for each tier
    MODEL_STANDARD: str = "gpt-4o-mini"
    MODEL_PREMIUM: str = "gpt-4o"

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
