from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from reliable_chat.app_config import AppConfig
from reliable_chat.chat.hub import ChatHub
from reliable_chat.gateway import ChatGateway
from reliable_chat.logging_config import setup_logging
from reliable_chat.storage.message_log import MessageLog


@dataclass
class AppRuntime:
    message_log: MessageLog
    hub: ChatHub
    gateway: ChatGateway
    log_descriptions: list[str]

    async def shutdown(self) -> None:
        await self.gateway.stop()
        self.message_log.close()
        logger.info("Message log closed")


def resolve_db_path(db_path: str) -> str:
    if db_path == ":memory:":
        return db_path
    path = Path(db_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    return str(path)


async def bootstrap_runtime(app: AppConfig, *, configure_logging: bool = True) -> AppRuntime:
    log_descriptions: list[str] = []
    if configure_logging:
        log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    message_log = MessageLog(resolve_db_path(app.db_path), page_size=app.resync_page_size)
    logger.info(f"Message log opened at {message_log.path} (last sequence {message_log.last_sequence()})")

    hub = ChatHub(
        message_log,
        outbox_max_size=app.outbox_max_size,
        announce_disconnects=app.announce_disconnects,
    )
    gateway = ChatGateway(
        hub,
        host=app.host,
        port=app.port,
        max_message_chars=app.max_message_chars,
    )
    try:
        await gateway.start()
    except BaseException:
        message_log.close()
        raise

    return AppRuntime(
        message_log=message_log,
        hub=hub,
        gateway=gateway,
        log_descriptions=log_descriptions,
    )
