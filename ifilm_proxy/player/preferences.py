import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles
import aiofiles.os
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class PlayerPreferences(BaseModel):
    audio_track: Optional[int] = Field(None, description="Array position of the chosen audio track.")
    playback_speed: float = 1.0
    quality: str = "auto"
    last_watched: float = 0.0


class PreferenceStore:
    """
    Player preferences persisted in one JSON file.

    Per-item preferences live under ``items``; volume and mute are global. Read failures
    yield defaults and write failures are logged, so a broken file never stops playback.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, Any]:
        try:
            async with aiofiles.open(self.path, "r") as f:
                data = json.loads(await f.read())
            return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.error(f"Error reading player preferences: {e}")
            return {}

    async def _write(self, data: Dict[str, Any]) -> bool:
        temp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "w") as f:
                await f.write(json.dumps(data))
            await aiofiles.os.replace(temp_path, self.path)
            return True
        except OSError as e:
            logger.error(f"Error saving player preferences: {e}")
            return False

    async def get(self, item_id: str) -> PlayerPreferences:
        stored = (await self._load()).get("items", {}).get(item_id, {})
        try:
            return PlayerPreferences.model_validate(stored)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable preferences for {item_id}: {e}")
            return PlayerPreferences()

    async def save(self, item_id: str, **changes) -> bool:
        """Merge ``changes`` into the item's preferences and stamp ``last_watched``."""
        async with self._lock:
            data = await self._load()
            items = data.setdefault("items", {})
            current = items.get(item_id, {})
            current.update(changes)
            current["last_watched"] = time.time()
            items[item_id] = current
            return await self._write(data)

    async def get_volume(self) -> float:
        volume = (await self._load()).get("volume", 1.0)
        return float(volume) if isinstance(volume, (int, float)) else 1.0

    async def set_volume(self, volume: float) -> bool:
        return await self._set_global("volume", max(0.0, min(1.0, float(volume))))

    async def get_muted(self) -> bool:
        return (await self._load()).get("muted") is True

    async def set_muted(self, muted: bool) -> bool:
        return await self._set_global("muted", bool(muted))

    async def _set_global(self, key: str, value: Any) -> bool:
        async with self._lock:
            data = await self._load()
            data[key] = value
            return await self._write(data)
