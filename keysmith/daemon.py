"""
Main daemon entry point — opens the vault and serves the local API.

Runs as: python -m keysmith.daemon

Subsystems:
- Vault (keyring or passphrase backend, opened once at startup)
- OAuth coordinator (callback listener started on first flow)
- Job scheduler (browser launched on first job)
- Local API (FastAPI on 127.0.0.1:9310)
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from keysmith.api import create_app
from keysmith.config import Config, get_config
from keysmith.oauth.callback import LOOPBACK_HOSTS
from keysmith.service import CredentialService, create_service

logger = logging.getLogger(__name__)


async def serve_api(config: Config, service: CredentialService) -> None:
    """Serve the local API until uvicorn is told to exit."""
    import uvicorn

    app = create_app(
        service,
        rate_limit=config.api_rate_limit,
        max_body_bytes=config.api_max_body_bytes,
    )
    uvi_config = uvicorn.Config(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level="warning",
    )
    server = uvicorn.Server(uvi_config)
    await server.serve()


async def main(config: Config | None = None, passphrase: str | None = None) -> None:
    """Open the vault, start the API, shut everything down on exit."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = config or get_config()
    if config.api_host not in LOOPBACK_HOSTS:
        raise ValueError(f"Refusing to serve on non-loopback address {config.api_host}")

    logger.info("Starting Keysmith...")
    logger.info("Data dir: %s", config.data_dir)
    logger.info("Vault backend: %s", config.vault.backend)
    logger.info("API: %s", config.api_url)

    if passphrase is None:
        passphrase = os.environ.get("KEYSMITH_VAULT_PASSPHRASE")
    service = create_service(config, passphrase=passphrase)
    service.scheduler.start()

    try:
        await serve_api(config, service)
    finally:
        logger.info("Shutting down subsystems...")
        await service.close()
        logger.info("Keysmith stopped")


def run() -> None:
    """Entry point for python -m keysmith.daemon"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error("Keysmith crashed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
