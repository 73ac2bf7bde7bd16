from apps.workers.config import EngineSettings


class Settings(EngineSettings):
    # http surface
    version: str = "1.0.0"
    cors_origins: str = "*"

    # per-IP limits (requests / minute) on endpoints that cause upstream work
    rl_resolve_per_min: int = 30
    rl_refresh_per_min: int = 6
    rl_sync_per_min: int = 60


settings = Settings()
