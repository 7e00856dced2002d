"""AI Client — the advisory oracle behind qualitative asset reviews.

Wraps the Anthropic (or Google Vertex) messages API behind two calls:
``is_configured()`` and ``evaluate(prompt)``. Tracks token usage and costs.
The oracle is optional: without credentials it reports itself unconfigured
and the reviewer falls back to the deterministic path.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from src.shell.config import AIConfig
from src.shell.database import Database

log = structlog.get_logger()

# Cost per million tokens (approximate, as of 2025)
MODEL_COSTS = {
    "claude-opus-4-6": {"input": 15.0, "output": 75.0},
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
}

TRANSIENT_MARKERS = ("timeout", "rate", "429", "500", "502", "503", "529", "overloaded", "connection")


class AdvisoryError(RuntimeError):
    """The oracle cannot be used for this request (unconfigured, over budget)."""


class AIClient:
    """Advisory oracle client supporting Anthropic and Vertex providers."""

    def __init__(self, config: AIConfig, db: Database | None = None) -> None:
        self._config = config
        self._db = db
        self._client = None
        self._daily_tokens_used: int = 0

    def is_configured(self) -> bool:
        if self._config.provider == "vertex":
            return bool(self._config.vertex_project_id)
        return bool(self._config.anthropic_api_key.strip())

    async def initialize(self) -> None:
        """Create the API client and seed the token counter from the DB."""
        if not self.is_configured():
            log.warning("ai.not_configured", provider=self._config.provider)
            return

        if self._config.provider == "vertex":
            from anthropic import AsyncAnthropicVertex
            self._client = AsyncAnthropicVertex(
                project_id=self._config.vertex_project_id,
                region=self._config.vertex_region,
                timeout=self._config.timeout_seconds,
                max_retries=0,
            )
        else:
            from anthropic import AsyncAnthropic
            self._client = AsyncAnthropic(
                api_key=self._config.anthropic_api_key,
                timeout=self._config.timeout_seconds,
                max_retries=0,
            )
        log.info("ai.initialized", provider=self._config.provider, model=self._config.model)

        if self._db is not None:
            row = await self._db.fetchone(
                "SELECT COALESCE(SUM(input_tokens + output_tokens), 0) as total "
                "FROM token_usage WHERE created_at >= date('now')"
            )
            if row and row["total"]:
                self._daily_tokens_used = row["total"]
                log.info("ai.tokens_seeded", used_today=self._daily_tokens_used)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    @property
    def tokens_remaining(self) -> int:
        return max(0, self._config.daily_token_limit - self._daily_tokens_used)

    def reset_daily_tokens(self) -> None:
        self._daily_tokens_used = 0

    async def evaluate(self, prompt: str, system: str = "", purpose: str = "asset_review") -> str:
        """Send one prompt and return the response text.

        Raises AdvisoryError when the oracle is unusable; SDK errors
        propagate after transient retries are exhausted.
        """
        if self._client is None:
            raise AdvisoryError("AI client not configured or not initialized")

        if self._daily_tokens_used >= self._config.daily_token_limit:
            log.warning("ai.daily_limit_reached", used=self._daily_tokens_used,
                        limit=self._config.daily_token_limit)
            raise AdvisoryError("Daily token limit reached")

        model = self._config.model
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": self._config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self._config.temperature,
        }
        if system:
            kwargs["system"] = system

        attempts = self._config.max_retries + 1
        for attempt in range(attempts):
            try:
                response = await self._client.messages.create(**kwargs)
                break
            except Exception as e:
                error_str = str(e).lower()
                is_transient = any(k in error_str for k in TRANSIENT_MARKERS)
                if not is_transient or attempt == attempts - 1:
                    raise
                wait = 2 ** attempt  # 1s, 2s, 4s
                log.warning("ai.retry", attempt=attempt + 1, error=str(e), wait=wait)
                await asyncio.sleep(wait)

        text = "".join(block.text for block in response.content if hasattr(block, "text"))

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        self._daily_tokens_used += input_tokens + output_tokens

        costs = MODEL_COSTS.get(model, {"input": 3.0, "output": 15.0})
        cost = (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000

        if self._db is not None:
            async with self._db.write_lock:
                await self._db.execute(
                    """INSERT INTO token_usage (model, input_tokens, output_tokens, cost_usd, purpose)
                       VALUES (?, ?, ?, ?, ?)""",
                    (model, input_tokens, output_tokens, cost, purpose),
                )
                await self._db.commit()

        log.info("ai.response", model=model, input_tokens=input_tokens,
                 output_tokens=output_tokens, cost=f"${cost:.4f}", purpose=purpose)
        return text

    async def get_daily_usage(self) -> dict:
        """Get today's token usage summary."""
        rows = []
        if self._db is not None:
            rows = await self._db.fetchall(
                """SELECT model, SUM(input_tokens) as input_total, SUM(output_tokens) as output_total,
                          SUM(cost_usd) as cost_total, COUNT(*) as calls
                   FROM token_usage WHERE created_at >= date('now')
                   GROUP BY model"""
            )
        return {
            "models": {r["model"]: {
                "input": r["input_total"], "output": r["output_total"],
                "cost": r["cost_total"], "calls": r["calls"],
            } for r in rows},
            "total_cost": sum(r["cost_total"] for r in rows),
            "daily_limit": self._config.daily_token_limit,
            "used": self._daily_tokens_used,
        }
