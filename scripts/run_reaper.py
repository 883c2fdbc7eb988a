# Runs the expired-request sweep until interrupted.
#   PIKUP_API_KEY=... python scripts/run_reaper.py --token <id token> [--once]
import argparse
import asyncio

from loguru import logger

from pikup.core.config import get_settings
from pikup.core.logging_setup import setup_logging
from pikup.core.session import Session
from pikup.deps import build_services


async def main(token: str, uid: str, once: bool, interval: float):
    settings = get_settings()
    setup_logging(settings)
    session = Session(uid=uid, access_token=token, role="driver")
    async with build_services(session, settings) as services:
        if once:
            count = await services.orders.reap_expired_orders()
            logger.info(f"Re-queued {count} expired requests")
            return
        stopped = asyncio.Event()
        reaper = services.orders.start_expiry_reaper(interval or None, on_error=lambda e: stopped.set())
        try:
            await stopped.wait()
        finally:
            reaper.stop()
            await reaper.wait_closed()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Re-queue pickup requests whose offer window lapsed.")
    parser.add_argument("--token", required=True, help="bearer credential for the document store")
    parser.add_argument("--uid", default="expiry-reaper")
    parser.add_argument("--once", action="store_true", help="sweep once and exit")
    parser.add_argument("--interval", type=float, default=0, help="seconds between sweeps")
    args = parser.parse_args()
    asyncio.run(main(args.token, args.uid, args.once, args.interval))
