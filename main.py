import asyncio
import logging
import signal
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from app.config import settings
from app.database.database import close_db, init_db
from app.utils.timezone import TimezoneAwareFormatter
from app.webapi.app import create_web_app
from app.webapi.server import WebAPIServer


class GracefulExit:

    def __init__(self):
        self.exit = False

    def exit_gracefully(self, signum, frame):
        logging.getLogger(__name__).info(f"Получен сигнал {signum}. Корректное завершение работы...")
        self.exit = True


def setup_logging() -> None:
    formatter = TimezoneAwareFormatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        timezone_name=settings.TIMEZONE,
    )

    log_handlers = []

    log_path = Path(settings.LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding='utf-8')
    file_handler.setFormatter(formatter)
    log_handlers.append(file_handler)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    log_handlers.append(stream_handler)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        handlers=log_handlers,
    )

    # Установим более высокий уровень логирования для "мусорных" логов
    logging.getLogger("aiohttp.access").setLevel(logging.ERROR)
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.internal").setLevel(logging.WARNING)
    logging.getLogger("aiogram").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.ERROR)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


async def main():
    setup_logging()
    logger = logging.getLogger(__name__)

    logger.info("🚀 Запуск шлюза подписок...")
    logger.info(f"Уровень логирования: {settings.LOG_LEVEL}, режим БД: {settings.DATABASE_MODE}")

    web_api_server = None

    try:
        logger.info("🗄️ Инициализация базы данных...")
        await init_db()

        web_app = create_web_app()
        web_api_server = WebAPIServer(app=web_app)
        await web_api_server.start()

        # after uvicorn startup, so its own signal capture does not replace these
        killer = GracefulExit()
        signal.signal(signal.SIGINT, killer.exit_gracefully)
        signal.signal(signal.SIGTERM, killer.exit_gracefully)

        logger.info(f"✅ Шлюз подписок запущен на {settings.WEB_API_HOST}:{settings.WEB_API_PORT}")

        while not killer.exit:
            await asyncio.sleep(1)

    except Exception as e:
        logger.error(f"❌ Критическая ошибка при работе шлюза: {e}", exc_info=True)
        raise

    finally:
        logger.info("🛑 Начинается корректное завершение работы...")

        if web_api_server:
            try:
                await web_api_server.stop()
                logger.info("✅ Веб-API остановлено")
            except Exception as error:
                logger.error(f"Ошибка остановки веб-API: {error}")

        try:
            await close_db()
            logger.info("✅ Соединения с базой данных закрыты")
        except Exception as e:
            logger.error(f"Ошибка закрытия базы данных: {e}")

        logger.info("✅ Завершение работы шлюза завершено")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🛑 Шлюз остановлен пользователем")
    except Exception as e:
        print(f"❌ Критическая ошибка: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
