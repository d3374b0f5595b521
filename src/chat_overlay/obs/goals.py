"""Persisted per-platform donation goals and their OBS text."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ValidationError

from ..bus import EventBus, PlatformEvents
from ..config import GoalConfig
from ..errors import ChatOverlayError, ConfigurationError, PlatformErrorHandler
from .sources import ObsSources

logger = logging.getLogger(__name__)

UNIT_CURRENCIES = frozenset({"coins", "bits"})
MIN_PAD_WIDTH = 4


class GoalState(BaseModel):
    current: float = 0
    target: float
    currency: str


def _padded(value: float, width: int) -> str:
    return str(int(math.floor(value))).zfill(width)


def format_goal(state: GoalState) -> str:
    """``0050/1000 coins``, ``$1.50/$5.00 USD`` or ``0100/0350 bits``."""

    if state.currency in UNIT_CURRENCIES:
        width = max(MIN_PAD_WIDTH, len(str(int(state.target))))
        return f"{_padded(state.current, width)}/{_padded(state.target, width)} {state.currency}"
    return f"${state.current:.2f}/${state.target:.2f} USD"


class GoalTracker:
    """Accumulates ``amount * gift_count`` per platform and mirrors it to OBS."""

    def __init__(
        self,
        configs: Mapping[str, GoalConfig],
        state_path: str | Path,
        *,
        sources: Optional[ObsSources] = None,
        bus: Optional[EventBus] = None,
        enabled: bool = True,
    ) -> None:
        if not state_path:
            raise ConfigurationError("goal state path is required")
        self._configs = {platform: config for platform, config in configs.items() if config.enabled}
        self._path = Path(state_path)
        self._sources = sources
        self._bus = bus
        self._enabled = enabled
        self._lock = asyncio.Lock()
        self._states: dict[str, GoalState] = {
            platform: GoalState(target=config.target, currency=config.currency)
            for platform, config in self._configs.items()
        }
        self._errors = PlatformErrorHandler(logger, "goals")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def state(self, platform: str) -> Optional[GoalState]:
        return self._states.get(platform.lower())

    def all_states(self) -> dict[str, dict[str, Any]]:
        return {
            platform: {**state.model_dump(), "formatted": format_goal(state)}
            for platform, state in self._states.items()
        }

    def format_goal_display(self, platform: str) -> str:
        state = self.state(platform)
        return format_goal(state) if state else "0/0 unknown"

    async def load(self) -> None:
        """Restore saved progress; targets and currencies always come from config."""

        document = await asyncio.to_thread(self._read)
        for platform, state in self._states.items():
            saved = document.get(platform)
            if not isinstance(saved, dict):
                continue
            try:
                restored = GoalState.model_validate({**saved, "target": state.target, "currency": state.currency})
            except ValidationError as exc:
                logger.warning("goals.invalid_state", extra={"platform": platform, "error": str(exc)})
                continue
            state.current = max(0.0, restored.current)
        logger.info("goals.loaded", extra={"platforms": sorted(self._states)})

    async def process_donation_goal(self, platform: str, delta: float) -> Optional[GoalState]:
        """Add ``delta`` to the platform goal, never dropping below zero."""

        if not self._enabled:
            return None
        state = self.state(platform)
        if state is None:
            logger.debug("goals.no_goal", extra={"platform": platform})
            return None
        if not isinstance(delta, (int, float)) or not math.isfinite(delta):
            self._errors.log_operational_error("Invalid goal delta", {"platform": platform, "delta": delta})
            return None
        async with self._lock:
            before = state.current
            state.current = max(0.0, state.current + float(delta))
            await asyncio.to_thread(self._write)
        logger.info(
            "goals.updated",
            extra={"platform": platform, "from": before, "to": state.current, "target": state.target},
        )
        await self._publish(platform.lower(), state)
        return state

    async def process_paypiggy_goal(self, platform: str, count: int = 1) -> Optional[GoalState]:
        config = self._configs.get(platform.lower())
        if config is None or config.paypiggy_equivalent <= 0:
            return None
        return await self.process_donation_goal(platform, config.paypiggy_equivalent * max(1, count))

    async def reset(self, platform: str) -> None:
        state = self.state(platform)
        if state is None:
            return
        async with self._lock:
            state.current = 0
            await asyncio.to_thread(self._write)
        await self._publish(platform.lower(), state)

    async def update_all_displays(self) -> None:
        for platform, state in self._states.items():
            await self._update_display(platform, state)

    async def _publish(self, platform: str, state: GoalState) -> None:
        await self._update_display(platform, state)
        if self._bus is not None:
            await self._bus.emit(
                PlatformEvents.GOAL_UPDATED,
                {"platform": platform, **state.model_dump(), "formatted": format_goal(state)},
            )

    async def _update_display(self, platform: str, state: GoalState) -> None:
        source = self._configs[platform].source_name
        if not source or self._sources is None:
            return
        if not self._sources.is_ready():
            logger.debug("goals.obs_not_ready", extra={"platform": platform})
            return
        try:
            await self._sources.update_text_source(source, format_goal(state))
        except ChatOverlayError as exc:
            self._errors.handle_event_processing_error(exc, "goal-display", {"platform": platform})

    def _read(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning("goals.corrupt_state", extra={"path": str(self._path)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_name(self._path.name + ".tmp")
        document = {platform: state.model_dump() for platform, state in self._states.items()}
        with open(temp_path, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, self._path)
