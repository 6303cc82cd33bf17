"""
Delete expired OAuth handshake states, once or periodically.

    python scripts/sweep_oauth_states.py
    python scripts/sweep_oauth_states.py --interval 300
"""

import argparse
import asyncio
from loguru import logger
import authbridge.database.orms  # noqa: F401
from authbridge.database import engine
from authbridge.handshake.service import sweep_expired_states


async def sweep(interval: int = 0):
    try:
        while True:
            removed = await sweep_expired_states()
            logger.info(f"Removed {removed} expired OAuth states")
            if not interval:
                break
            await asyncio.sleep(interval)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--interval",
        type=int,
        default=0,
        help="seconds between sweeps, 0 to sweep once and exit",
    )
    args = parser.parse_args()
    asyncio.run(sweep(args.interval))
