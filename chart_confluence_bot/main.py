from __future__ import annotations

import argparse
import asyncio
import logging

from .config import load_config
from .runner import AlertRunner


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Chart Confluence - multi-TF chart analysis signal bot")
    p.add_argument("--config", required=True, help="Path to YAML config")
    p.add_argument("--user", default=None, help="User id (defaults to capture.user_id)")
    p.add_argument("--once", action="store_true", help="Run a single capture cycle and exit")
    args = p.parse_args(argv)

    cfg = load_config(args.config)
    _setup_logging(cfg.app.log_level)

    runner = AlertRunner(cfg, user_id=args.user)

    async def _run() -> None:
        try:
            if args.once:
                res = await runner.run_once()
                if res is not None:
                    logging.getLogger("main").info(
                        "cycle_done capture=%s reason=%s signal=%s missing=%s",
                        res.capture_id,
                        res.reason,
                        res.signal.signal_id if res.signal else None,
                        res.missing,
                    )
            else:
                await runner.run_forever()
        finally:
            # Close shared HTTP sessions cleanly.
            await runner.close()

    try:
        asyncio.run(_run())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
