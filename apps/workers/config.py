# apps/workers/config.py
#
# Engine settings shared by api / scheduler / workers.
#
# Sources, highest priority first:
#   1. constructor kwargs (tests)
#   2. environment variables / .env
#   3. YAML file named by ENGINE_CONFIG_FILE (optional)
#
# YAML example:
#
#   resolve_order: [youtube_api, scrape, mirror]
#   fetch_order:   [youtube_api, rss, mirror]
#   pacing:
#     scrape: {base_delay: 2.0, max_delay: 60}
#     rss:    {base_delay: 0.2}
#   piped_instances:
#     - https://pipedapi.kavin.rocks

from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


class PacingRule(BaseModel):
    base_delay: float = 0.0
    max_delay: float = 30.0
    failure_threshold: Optional[int] = None
    reset_timeout: Optional[float] = None


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # runtime env
    env: str = "dev"
    log_level: str = "INFO"

    # backing store
    redis_url: str = "redis://redis:6379/0"

    # redis keys
    sync_doc_key: str = "sync:document"
    redirects_key: str = "sync:redirects"
    redirects_generation_key: str = "sync:redirects:generation"
    channel_meta_key: str = "channels:meta"
    feed_items_key: str = "feed:videos"
    feed_run_key: str = "feed:run"
    feed_attempt_key: str = "feed:last_attempt"
    run_lock_key: str = "aggregate:lock"
    quota_key_prefix: str = "quota:units"

    # rq
    queue_name: str = "default"
    pending_job_id: str = "aggregate-pending"
    job_timeout: int = 900
    run_lock_ttl: int = 900

    # aggregate output
    max_items: int = 1000
    per_channel_limit: int = 15
    empty_run_policy: Literal["preserve", "empty"] = "preserve"

    # scheduling
    poll_interval_min: int = 15
    poll_jitter_sec: float = 0.0

    # batching (metered api vs everything else)
    api_batch_size: int = 50
    api_batch_delay: float = 0.0
    api_concurrency: int = 10
    rss_batch_size: int = 5
    rss_batch_delay: float = 2.0
    rss_concurrency: int = 5
    resolve_concurrency: int = 5

    # transports
    http_timeout: float = 10.0
    user_agent: str = "Mozilla/5.0 (compatible; SubFeed/1.0)"
    resolve_order: List[str] = ["youtube_api", "scrape", "mirror"]
    fetch_order: List[str] = ["youtube_api", "rss", "mirror"]

    youtube_api_key: Optional[str] = None
    youtube_api_base: str = "https://www.googleapis.com/youtube/v3"
    api_daily_quota: int = 10000
    api_fetch_durations: bool = True

    scrape_proxies: List[str] = [
        "",
        "https://api.allorigins.win/raw?url=",
        "https://api.codetabs.com/v1/proxy?quest=",
    ]
    piped_instances: List[str] = [
        "https://pipedapi.kavin.rocks",
        "https://api.piped.ot.ax",
        "https://pipedapi.drgns.space",
    ]
    invidious_instances: List[str] = [
        "https://inv.tux.pizza",
        "https://invidious.projectsegfau.lt",
        "https://yt.artemislena.eu",
    ]
    mirror_accept_first_result: bool = False

    # limiter / breaker defaults (per adapter overrides in `pacing`)
    base_delay: float = 0.0
    max_delay: float = 30.0
    failure_threshold: int = 5
    reset_timeout: float = 300.0
    pacing: Dict[str, PacingRule] = {
        "scrape": PacingRule(base_delay=1.0, max_delay=60.0),
        "mirror": PacingRule(base_delay=0.5, max_delay=30.0),
        "rss": PacingRule(base_delay=0.1, max_delay=20.0),
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        sources: List[PydanticBaseSettingsSource] = [init_settings, env_settings, dotenv_settings]
        yaml_path = os.getenv("ENGINE_CONFIG_FILE")
        if yaml_path and os.path.exists(yaml_path):
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=yaml_path))
        sources.append(file_secret_settings)
        return tuple(sources)

    def rule_for(self, adapter: str) -> PacingRule:
        rule = self.pacing.get(adapter)
        return PacingRule(
            base_delay=rule.base_delay if rule else self.base_delay,
            max_delay=rule.max_delay if rule else self.max_delay,
            failure_threshold=(rule.failure_threshold if rule and rule.failure_threshold else self.failure_threshold),
            reset_timeout=(rule.reset_timeout if rule and rule.reset_timeout else self.reset_timeout),
        )


def get_settings() -> EngineSettings:
    return EngineSettings()
