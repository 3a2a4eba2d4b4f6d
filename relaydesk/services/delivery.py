"""
Telegram delivery — send a reply through one of the tenant's active bots.

A contact's ``contact_info`` is the Telegram chat id, optionally suffixed
with the bot it came in through (``"<chat_id>:<bot name>"``). The named
bot is tried first, then the tenant's other active Telegram bots.

Transient Telegram failures surface as DeliveryError so the caller's
retry wrapper can try again; permanent ones (blocked chat, bad token)
return False.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from telegram import Bot
from telegram.error import NetworkError, RetryAfter, TelegramError

from relaydesk.services.backend import DataBackend, eq

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Delivery failed for a reason worth retrying."""


def parse_address(contact_info: str) -> Tuple[str, Optional[str]]:
    chat_id, _, bot_name = str(contact_info).partition(":")
    return chat_id.strip(), (bot_name.strip() or None)


class TelegramDelivery:
    """Delivers text to a Telegram chat using the tenant's bots table."""

    def __init__(self, backend: DataBackend, bot_factory: Callable[[str], Any] = Bot):
        self.backend = backend
        self._bot_factory = bot_factory

    async def active_bots(self) -> List[Dict[str, Any]]:
        return await self.backend.select(
            "bots",
            columns="id, name, token, platform",
            filters=[eq("platform", "telegram"), eq("is_active", True)],
            order="created_at.desc",
        )

    async def deliver(self, address: str, text: str, bot_selector: Optional[str] = None) -> bool:
        chat_id, named_bot = parse_address(address)
        if not chat_id:
            logger.warning("[DELIVERY] Contact has no chat id; skipping delivery")
            return False
        preferred = bot_selector or named_bot

        bots = [b for b in await self.active_bots() if b.get("token")]
        if not bots:
            logger.warning("[DELIVERY] No active Telegram bots found")
            return False
        if preferred:
            bots.sort(key=lambda b: b.get("name") != preferred)

        transient: Optional[Exception] = None
        for bot in bots:
            try:
                async with self._bot_factory(bot["token"]) as tg:
                    await tg.send_message(chat_id=chat_id, text=text)
                logger.info(f"[DELIVERY] Sent to {chat_id} via {bot.get('name')}")
                return True
            except (NetworkError, RetryAfter) as e:
                transient = e
                logger.warning(f"[DELIVERY] Transient failure with bot {bot.get('name')}: {e}")
            except TelegramError as e:
                logger.warning(f"[DELIVERY] Bot {bot.get('name')} could not send: {e}")

        if transient is not None:
            raise DeliveryError(f"Telegram delivery to {chat_id} failed: {transient}") from transient
        return False
