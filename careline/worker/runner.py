from __future__ import annotations

import signal
import sys
from typing import Optional

from ..config import CarelineConfig, get_careline_config
from ..utils.logging import get_logger

logger = get_logger()


def run_from_env(config: Optional[CarelineConfig] = None) -> None:
    """Run the lane consumers against the configured stores until signalled."""
    from ..engine import build_postgres_engine

    config = config or get_careline_config()
    engine = build_postgres_engine(config)

    def _stop(signum, _frame) -> None:
        logger.info(f"Received signal {signum}, stopping workers")
        engine.pool.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    logger.info("Starting careline worker")
    try:
        engine.pool.run(block=True)
    finally:
        engine.close()


def main() -> None:
    if len(sys.argv) > 1:
        print("Usage: python -m careline.worker", file=sys.stderr)
        raise SystemExit(1)
    run_from_env()


if __name__ == "__main__":  # pragma: no cover - manual
    main()
