import asyncio
import logging
import os
import signal
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from alias_relay.api import create_app
from alias_relay.config_loader import RelayConfig, load_config
from alias_relay.dns_records import KEYGEN_HINT, DKIMKeyError, dkim_public_key, recommended_records
from alias_relay.server import RelayServer

# Configure logging level from environment
log_level = os.getenv("RELAY_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)
logger = logging.getLogger("AliasRelay")


def announce(config: RelayConfig) -> None:
    """Validate the DKIM key and log the DNS records to publish.

    Exits the process when DMARC is enabled with an unusable DKIM key.
    """
    smtp = config.smtp
    public_key = None
    if smtp.enable_dmarc:
        try:
            public_key = dkim_public_key(smtp.dkim_private_key or "")
        except DKIMKeyError as exc:
            logger.error("DKIM private key is invalid: %s", exc)
            logger.info("Generate a new key with: %s", KEYGEN_HINT)
            logger.info("then point [smtp] dkim_private_key_file at the generated file")
            sys.exit(1)
        logger.info("DMARC enabled, DKIM selector: %s", smtp.dkim_selector)
    else:
        logger.info("DMARC disabled")

    for line in recommended_records(config, public_key):
        logger.info(line)

    logger.info("SMTP listen address: %s", smtp.listen_address)
    logger.info("SMTP TLS listen address: %s", smtp.listen_address_tls)
    logger.info("SMTP allowed domains: %s", ", ".join(smtp.allowed_domains) or "-")
    logger.info("Telegram chat id: %s", config.telegram.chat_id or "-")
    if not smtp.private_email:
        logger.warning("No private mailbox configured, messages will be accepted but not forwarded")


async def run_service(config: RelayConfig) -> None:
    """Run the relay until SIGINT/SIGTERM when the status API is disabled."""
    server = RelayServer(config, logger=logger)
    await server.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - non-Unix platforms
            pass
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await server.stop()


if __name__ == "__main__":
    settings = load_config()
    announce(settings)

    if not settings.status.enabled:
        asyncio.run(run_service(settings))
        sys.exit(0)

    # Let uvicorn own the event loop and start the relay from the app lifespan
    relay = RelayServer(settings, logger=logger)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        yield
        await relay.stop()

    app = create_app(relay, api_token=settings.status.api_token, lifespan=lifespan)
    uvicorn.run(app, host=settings.status.host, port=settings.status.port)
