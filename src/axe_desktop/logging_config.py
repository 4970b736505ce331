import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_LOG_FILE = "axe-desktop.log"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    """Writes to stderr so that log lines never interleave with streamed replies on stdout."""

    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format="<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = DEFAULT_LOG_FILE,
        rotation: str = "10 MB",
        retention: int = 3,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {thread.name} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            enqueue=True,
        )

    def describe(self, level: str) -> str:
        return f"file ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}


def default_consumers(home_dir: Path | None = None) -> list[dict[str, Any]]:
    path = str(home_dir / "logs" / DEFAULT_LOG_FILE) if home_dir is not None else DEFAULT_LOG_FILE
    return [
        {"type": "console", "level": "WARNING"},
        {"type": "file", "path": path},
    ]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    home_dir: Path | None = None,
) -> list[str]:
    """Configure logging sinks. Returns a description of each registered consumer.

    Relative file paths are resolved against ``home_dir`` when one is given.
    """
    logger.remove()

    if consumers is None:
        consumers = default_consumers(home_dir)

    descriptions: list[str] = []

    for config in consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        # remaining keys are constructor arguments of the consumer
        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        if home_dir is not None and "path" in kwargs and not Path(kwargs["path"]).is_absolute():
            kwargs["path"] = str(home_dir / kwargs["path"])
        sink_level = config.get("level", level)

        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
