from __future__ import annotations

import uvicorn

from clubcore.apps.api.main import create_app
from clubcore.core.config import get_settings


def main() -> None:
    # Run the API with env-driven bind settings for local and container use.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
