import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {process}:{thread.name} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, stream: str = "stderr"):
        self._stream = sys.stdout if stream == "stdout" else sys.stderr
        self._stream_name = "stdout" if stream == "stdout" else "stderr"

    def register(self, level: str) -> None:
        logger.add(self._stream, level=level, format=_CONSOLE_FORMAT)

    def describe(self, level: str) -> str:
        return f"console ({self._stream_name}, {level})"


class FileLogConsumer:
    """Rotating operator log. Writes are queued because appends log from worker threads."""

    def __init__(
        self,
        path: str = "logs/chat-server.log",
        rotation: str = "10 MB",
        retention: int = 5,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        kind = "json file" if self._serialize else "file"
        return f"{kind} ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file", "path": "logs/chat-server.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers and describe them."""
    logger.remove()

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = str(config.get("type", "")).strip().lower()
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = str(config.get("level", level)).upper()

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
