from __future__ import annotations

import uvicorn

from .settings import load_gateway_settings_from_env


def main() -> None:
    settings = load_gateway_settings_from_env()
    uvicorn.run(
        "media_gateway.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
