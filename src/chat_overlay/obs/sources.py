"""Source, group and media operations on top of the OBS connection."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from ..errors import ObsRequestError
from .connection import OBSConnectionManager

logger = logging.getLogger(__name__)

MEDIA_RESTART = "OBS_WEBSOCKET_MEDIA_INPUT_ACTION_RESTART"
MEDIA_STOP = "OBS_WEBSOCKET_MEDIA_INPUT_ACTION_STOP"


class ObsSources:
    """Text, visibility and media helpers used by the display queue."""

    def __init__(self, connection: OBSConnectionManager) -> None:
        self._obs = connection
        self._group_items: dict[str, int] = {}
        connection.subscribe("SceneItemCreated", self._clear_cache)
        connection.subscribe("SceneItemRemoved", self._clear_cache)

    @property
    def connection(self) -> OBSConnectionManager:
        return self._obs

    def is_ready(self) -> bool:
        return self._obs.is_ready()

    def _clear_cache(self, _data: Mapping[str, Any]) -> None:
        self._group_items.clear()

    async def update_text_source(self, source_name: str, text: str) -> None:
        await self._obs.call(
            "SetInputSettings",
            {"inputName": source_name, "inputSettings": {"text": text}, "overlay": True},
        )
        logger.debug("obs.text_updated", extra={"source": source_name})

    async def clear_text_source(self, source_name: str) -> None:
        await self.update_text_source(source_name, "")

    async def set_source_visibility(self, scene_name: str, source_name: str, visible: bool) -> None:
        item_id = await self._obs.get_scene_item_id(scene_name, source_name)
        await self._obs.call(
            "SetSceneItemEnabled",
            {"sceneName": scene_name, "sceneItemId": item_id, "sceneItemEnabled": visible},
        )

    async def _group_item_id(self, group_name: str, source_name: str) -> int:
        key = f"{group_name}:{source_name}"
        if key in self._group_items:
            return self._group_items[key]
        response = await self._obs.call("GetGroupSceneItemList", {"sceneName": group_name})
        for item in response.get("sceneItems") or []:
            if item.get("sourceName") == source_name:
                self._group_items[key] = item["sceneItemId"]
                return item["sceneItemId"]
        raise ObsRequestError("GetGroupSceneItemList", None, f"{source_name!r} not found in group {group_name!r}")

    async def set_group_source_visibility(self, group_name: str, source_name: str, visible: bool) -> None:
        item_id = await self._group_item_id(group_name, source_name)
        await self._obs.call(
            "SetSceneItemEnabled",
            {"sceneName": group_name, "sceneItemId": item_id, "sceneItemEnabled": visible},
        )

    async def set_platform_logos(
        self, group_name: Optional[str], logos: Mapping[str, str], active_platform: Optional[str]
    ) -> None:
        """Show the active platform's logo inside ``group_name`` and hide the rest."""

        if not group_name:
            return
        for platform, source in logos.items():
            visible = active_platform is not None and platform.lower() == active_platform.lower()
            try:
                await self.set_group_source_visibility(group_name, source, visible)
            except ObsRequestError as exc:
                logger.warning("obs.logo_failed", extra={"platform": platform, "group": group_name, "error": str(exc)})

    async def set_media_file(self, input_name: str, file_path: str) -> None:
        await self._obs.call(
            "SetInputSettings",
            {"inputName": input_name, "inputSettings": {"local_file": file_path}, "overlay": True},
        )

    async def trigger_media(self, input_name: str, action: str = MEDIA_RESTART) -> None:
        await self._obs.call("TriggerMediaInputAction", {"inputName": input_name, "mediaAction": action})
        logger.debug("obs.media_triggered", extra={"input": input_name, "action": action})
