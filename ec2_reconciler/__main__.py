"""
Run the reconciler service: ``python -m ec2_reconciler``.

Configuration comes from EC2_RECONCILER_* environment variables. SIGTERM and
SIGINT stop both queue listeners; an in-flight notification finishes first.
"""

import asyncio
import logging
import signal

import uvloop

from ec2_reconciler.app import ReconcilerApp
from ec2_reconciler.config import ReconcilerSettings

logger = logging.getLogger("ec2_reconciler")

STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


async def serve(settings: ReconcilerSettings) -> None:
    app = ReconcilerApp(settings)
    await app.initialize()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop(sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, stopping")
        stop.set()

    for sig in STOP_SIGNALS:
        loop.add_signal_handler(sig, request_stop, sig)

    app.start()
    try:
        await stop.wait()
    finally:
        for sig in STOP_SIGNALS:
            loop.remove_signal_handler(sig)
        logger.info("Shutting down reconciler")
        await app.shutdown()


def main() -> None:
    settings = ReconcilerSettings()  # type: ignore[call-arg]
    logging.basicConfig(
        level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s"
    )
    try:
        uvloop.run(serve(settings))
    except KeyboardInterrupt:
        # Interrupted before the signal handlers were installed
        pass


if __name__ == "__main__":
    main()
