"""Run the quest engine API with uvicorn."""

from __future__ import annotations

import logging

import uvicorn

import engine_config as config
from app import create_app

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
log = logging.getLogger(__name__)

app = create_app()


def main() -> None:
    log.info("starting quest engine on %s:%s (store=%s)", config.HOST, config.PORT, config.STORE_BACKEND)
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
