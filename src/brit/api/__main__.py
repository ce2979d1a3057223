# src/brit/api/__main__.py
from __future__ import annotations

import uvicorn

from brit.env import load_dotenv_if_present
from brit.log import configure_logging


def main() -> None:
    # Load .env early so BRIT_* vars exist before anything reads them.
    load_dotenv_if_present()
    configure_logging()

    # Import after dotenv load (prevents "config read before env" surprises)
    from brit.api.app import create_app
    from brit.config import load_matcher_config

    cfg = load_matcher_config()
    uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level="info")


if __name__ == "__main__":
    main()
