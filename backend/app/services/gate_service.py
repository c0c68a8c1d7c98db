"""
Gate service - owns the evaluator for the HTTP layer and applies hot reloads.
"""
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import ValidationError

from config.settings import Settings, load_settings
from trafficgate.config_reload import ConfigReloader, ReloadPlan
from trafficgate.errors import ConfigurationError
from trafficgate.pipeline import GateConfig, GateEvaluator
from trafficgate.replay_store import create_hash_counter


class GateService:
    """
    Evaluator lifecycle for the API.

    Scoring and route changes in the env file are applied without a restart;
    an invalid edit is logged and the previous configuration stays active.
    """

    def __init__(self, settings: Optional[Settings] = None, env_file: str = ".env"):
        self.env_file = env_file
        self.settings = settings or load_settings(env_file)
        self.evaluator = GateEvaluator(
            GateConfig.from_settings(self.settings),
            store=create_hash_counter(self.settings.redis_url, self.settings.gate_replay_window_seconds),
        )
        self.reloader = ConfigReloader(env_path=env_file)
        self.reloader.on_reload(self.apply_reload)
        self.reload_count = 0

    async def start(self) -> None:
        await self.reloader.start()

    async def stop(self) -> None:
        await self.reloader.stop()

    async def close(self) -> None:
        """Release replay store connections (the Redis pool)"""
        close = getattr(self.evaluator.store, "close", None)
        if close is not None:
            await close()
            logger.info("Replay store closed")

    async def apply_reload(self, plan: ReloadPlan) -> None:
        if not plan.needs_rebuild:
            return
        try:
            new_settings = load_settings(self.env_file)
            config = GateConfig.from_settings(new_settings)
        except (ConfigurationError, ValidationError) as e:
            logger.error(f"Config reload rejected, keeping previous configuration: {e}")
            return
        self.settings = new_settings
        self.evaluator.reconfigure(config)
        self.reload_count += 1

    def get_status(self) -> Dict[str, Any]:
        config = self.evaluator.config
        return {
            "status": "ok",
            "thresholds": {
                "block": config.scoring.block_threshold,
                "challenge": config.scoring.challenge_threshold,
                "quick_allow": config.scoring.quick_allow_threshold,
            },
            "pending_challenges": len(self.evaluator.cache),
            "hooks": self.evaluator.hooks.get_stats(),
            "reloads": self.reload_count,
            "watching_config": self.reloader.running,
        }


gate_service = GateService()
