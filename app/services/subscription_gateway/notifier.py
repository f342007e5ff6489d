import html
import logging
import re
from datetime import UTC, datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from app.database.crud.device import SubscriberDevice
from app.services.subscription_gateway.errors import NotificationFailure
from app.utils.outcome import Outcome

logger = logging.getLogger(__name__)

_TELEGRAM_REF = re.compile(r"^(?:tg_)?(\d{5,15})$")


def resolve_chat_id(subscriber_ref: str) -> Optional[int]:
    match = _TELEGRAM_REF.match(subscriber_ref or "")
    return int(match.group(1)) if match else None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class NewDeviceNotifier:
    """Telegram alert to the subscriber when a device shows up for the first time."""

    def __init__(
        self,
        bot: Optional[Bot],
        *,
        timezone_name: str = "Europe/Moscow",
        enabled: bool = True,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.bot = bot
        self.enabled = enabled and bot is not None
        self._timezone = ZoneInfo(timezone_name)
        self._now = now

    def build_message(self, device: SubscriberDevice) -> str:
        local_time = self._now().astimezone(self._timezone)
        country = device.country or "Неизвестно"
        return (
            "🔔 <b>Новое устройство подключено</b>\n\n"
            f"📱 <b>Устройство:</b> {html.escape(device.display_name or 'Standard')}\n"
            f"💻 <b>Платформа:</b> {html.escape(device.platform or 'Unknown')}\n"
            f"🌐 <b>IP:</b> {html.escape(device.ip or '-')}\n"
            f"🌍 <b>Страна:</b> {html.escape(country)}\n"
            f"⏰ <b>Время:</b> {local_time.strftime('%d.%m.%Y, %H:%M:%S')}\n\n"
            "Если это не вы, зайдите в личный кабинет и отключите устройство."
        )

    async def notify_new_device(self, subscriber_ref: str, device: SubscriberDevice) -> Outcome[bool]:
        if not self.enabled:
            return Outcome.ok(False)

        chat_id = resolve_chat_id(subscriber_ref)
        if chat_id is None:
            logger.debug(f"Подписчик {subscriber_ref} не привязан к Telegram, уведомление не отправлено")
            return Outcome.ok(False)

        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=self.build_message(device),
                parse_mode="HTML",
            )
            logger.info(f"✅ Уведомление о новом устройстве отправлено пользователю {chat_id}")
            return Outcome.ok(True)

        except TelegramForbiddenError:
            logger.warning(f"⚠️ Пользователь {chat_id} заблокировал бота")
            return Outcome.advisory(NotificationFailure("bot blocked by user"), fallback=False)
        except TelegramBadRequest as e:
            logger.error(f"❌ Ошибка Telegram API при отправке уведомления пользователю {chat_id}: {e}")
            return Outcome.advisory(NotificationFailure(str(e)), fallback=False)
        except Exception as e:
            logger.error(f"❌ Неожиданная ошибка при отправке уведомления пользователю {chat_id}: {e}")
            return Outcome.advisory(NotificationFailure(str(e)), fallback=False)

    async def close(self) -> None:
        if self.bot is not None:
            await self.bot.session.close()
