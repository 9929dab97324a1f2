"""
In-process link registry and vehicle directory.

The production system keeps these in a database; here they live in memory and can
be seeded from a JSON file (ALERT_LINKS_FILE):

    {
      "links": {"user-1": "123456789"},
      "vehicles": [
        {"vin": "5YJ3...", "user_id": "user-1", "display_name": "Model 3",
         "locale": "fr", "debug_messages": false}
      ]
    }
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VehicleOwner:
    vin: str
    user_id: str
    display_name: Optional[str] = None
    locale: str = "en"
    debug_messages: bool = False


class LinkRegistry(Protocol):
    async def remove_link(self, user_id: str) -> None:
        ...


class VehicleDirectory(Protocol):
    async def lookup(self, vin: str) -> Optional[VehicleOwner]:
        ...


class InMemoryLinkRegistry:
    """user_id -> Telegram chat id"""

    def __init__(self, links: Optional[Dict[str, str]] = None):
        self._links: Dict[str, str] = {str(k): str(v) for k, v in (links or {}).items()}
        self._lock = asyncio.Lock()

    def get_chat_id(self, user_id: str) -> Optional[str]:
        return self._links.get(user_id)

    async def link(self, user_id: str, chat_id: str) -> None:
        async with self._lock:
            self._links[user_id] = str(chat_id)
        logger.info(f"Telegram chat linked for user {user_id}")

    async def remove_link(self, user_id: str) -> None:
        async with self._lock:
            removed = self._links.pop(user_id, None)
        if removed is not None:
            logger.info(f"Telegram link removed for user {user_id}")

    def __len__(self) -> int:
        return len(self._links)


class InMemoryVehicleDirectory:
    """vin -> owner"""

    def __init__(self, owners: Optional[Iterable[VehicleOwner]] = None):
        self._owners: Dict[str, VehicleOwner] = {owner.vin: owner for owner in (owners or [])}

    def register(self, owner: VehicleOwner) -> None:
        self._owners[owner.vin] = owner

    async def lookup(self, vin: str) -> Optional[VehicleOwner]:
        return self._owners.get(vin)

    def __len__(self) -> int:
        return len(self._owners)


def _owner_from_dict(item: Dict[str, Any]) -> VehicleOwner:
    return VehicleOwner(
        vin=str(item["vin"]).strip(),
        user_id=str(item["user_id"]),
        display_name=item.get("display_name"),
        locale=str(item.get("locale") or "en"),
        debug_messages=bool(item.get("debug_messages", False)),
    )


def load_registry(path: str) -> Tuple[InMemoryLinkRegistry, InMemoryVehicleDirectory]:
    """Build both stores from a JSON seed file; an empty path yields empty stores."""
    if not path:
        return InMemoryLinkRegistry(), InMemoryVehicleDirectory()

    seed_path = Path(path)
    if not seed_path.exists():
        logger.warning(f"Links file {seed_path} not found, starting with an empty registry")
        return InMemoryLinkRegistry(), InMemoryVehicleDirectory()

    data = json.loads(seed_path.read_text(encoding="utf-8"))
    links = data.get("links") or {}
    owners = [_owner_from_dict(item) for item in data.get("vehicles") or []]
    logger.info(f"Loaded {len(links)} Telegram links and {len(owners)} vehicles from {seed_path}")
    return InMemoryLinkRegistry(links), InMemoryVehicleDirectory(owners)
