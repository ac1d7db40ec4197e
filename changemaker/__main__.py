"""
changemaker.__main__ — Entry point for ``python -m changemaker``
================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Optionally seed the demo workspace (``--seed``).
5. Serve the FastAPI app with uvicorn (blocking).

Run with::

    python -m changemaker --seed --port 8000
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

from changemaker.config import load_config
from changemaker.database.engine import create_db_engine, init_db
from changemaker.database.seed import seed_demo_workspace

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("changemaker")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="changemaker", description="Run the Changemaker API")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    parser.add_argument("--seed", action="store_true", help="create the demo workspace")
    parser.add_argument("--reload", action="store_true", help="auto-reload on code changes")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Bootstrap and serve the Changemaker API."""

    # 1. Environment variables (secrets).
    load_dotenv()
    args = _parse_args(argv)

    if not os.getenv("SUPABASE_JWT_SECRET"):
        logger.critical(
            "SUPABASE_JWT_SECRET is not set.  "
            "Copy .env.example → .env and paste your Supabase JWT secret."
        )
        sys.exit(1)

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — %s (frontend %s)", cfg.app_name, cfg.frontend_url)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4. Demo data (idempotent).
    if args.seed:
        seed_demo_workspace(engine)
    engine.dispose()

    # 5. API (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Changemaker API on %s:%d…", args.host, args.port)
    uvicorn.run(
        "changemaker.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
