"""Run the relay: `python -m history_relay`."""

from __future__ import annotations

import uvicorn

from history_relay.config import get_settings
from history_relay.logging_setup import configure_logging


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        "history_relay.api.main:create_app",
        factory=True,
        host=settings.server_host,
        port=settings.server_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
