"""
Order Tracker Service
=====================
Process entry point: configuration, logging, wiring and the web server.

Wiring:
    LocalCache + DatabaseClient -> OrderStore -> RealtimeFeed
    OrderTextExtractor ---------------------------^ (API only)
"""

import logging

import uvicorn

from api import create_app
from cache import LocalCache
from config import ConfigurationError, get_config, validate_configuration
from db import DatabaseClient
from extract import OrderTextExtractor
from order_feed import RealtimeFeed
from store import OrderStore, StorePolicy


logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_app(config=None):
    """
    Assemble the store and its collaborators from configuration.

    Without Supabase credentials the store runs on the local snapshot
    only; without an LLM key the text endpoints answer 503/422.
    """
    config = config or get_config()

    database = None
    feed = None

    if config.supabase.enabled:
        database = DatabaseClient.from_config(config.supabase)

    store = OrderStore(
        cache=LocalCache(config.store.cache_path),
        database=database,
        policy=StorePolicy.from_config(config.store)
    )

    if config.supabase.enabled and config.supabase.enable_realtime:
        feed = RealtimeFeed(
            store,
            url=config.supabase.url,
            key=config.supabase.key,
            table=config.supabase.table
        )

    extractor = OrderTextExtractor.from_config(config.llm) if config.llm.enabled else None

    return create_app(
        store,
        database=database,
        feed=feed,
        extractor=extractor,
        cors_origins=config.server.cors_origins
    )


def main():
    """Run the API server."""
    try:
        config = get_config()
    except ConfigurationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {str(e)}")
        raise SystemExit(1)

    configure_logging(config.server.log_level)
    validate_configuration()

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        build_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
