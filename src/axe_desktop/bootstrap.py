from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from axe_desktop.app_config import AppConfig, load_app_config
from axe_desktop.logging_config import setup_logging
from axe_desktop.service import ConversationService
from axe_desktop.storage import RecordStore


@dataclass
class AppRuntime:
    config: AppConfig
    store: RecordStore
    service: ConversationService
    log_descriptions: list[str]

    async def aclose(self) -> None:
        await self.service.aclose()
        self.store.close()


def bootstrap_runtime(home_dir: Path | None = None, config: AppConfig | None = None) -> AppRuntime:
    app = config or load_app_config(home_dir)
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers, home_dir=app.home_dir)

    db_path = Path(app.db_path)
    if not db_path.is_absolute():
        db_path = app.home_dir / db_path
    store = RecordStore(str(db_path))
    service = ConversationService(app, store)

    active = app.get_active_provider()
    logger.info(
        f"Runtime ready: db={db_path}, provider={active.name if active else '-'}, "
        f"tool endpoints={sum(1 for s in app.mcp_servers if s.enabled)}"
    )
    return AppRuntime(config=app, store=store, service=service, log_descriptions=log_descriptions)
