#!/usr/bin/env python3
"""
Order fulfillment service entry point
Loads configuration once, wires the components together and runs the aiohttp server
until SIGINT/SIGTERM
"""

import sys
import signal
import asyncio
import logging

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)

# Registry and Telegram URLs carry credentials in query strings / paths
logging.getLogger("httpx").setLevel(logging.WARNING)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from admin_alerts import configure_admin_alerts
from database import close_connection_pool, configure_database, init_database
from fulfillment_config import Settings
from fulfillment_errors import ConfigurationError, DatabaseError
from health_monitor import HealthMonitor
from services.checkout import CheckoutService
from services.contact_registry import ContactRegistry
from services.cpanel import CPanelService
from services.fulfillment_orchestrator import FulfillmentOrchestrator
from services.order_store import OrderStore
from services.registrar import RegistrarService
from services.stripe_payments import StripePaymentService
from webhook_handler import create_app, start_webhook_server


async def run_service(settings: Settings) -> None:
    """Start the service and block until a shutdown signal arrives"""
    configure_database(settings.database_url)
    await init_database()

    alerts = configure_admin_alerts(settings)
    order_store = OrderStore()
    contact_registry = ContactRegistry()
    registrar = RegistrarService(settings)
    hosting = CPanelService(settings)

    orchestrator = FulfillmentOrchestrator(settings, order_store, contact_registry, registrar, hosting, alerts)
    checkout = None
    if settings.stripe_secret_key:
        checkout = CheckoutService(order_store, contact_registry, registrar, StripePaymentService(settings))

    app = create_app(settings, orchestrator, checkout, HealthMonitor())
    runner = await start_webhook_server(app, settings.port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop_event.set)

    try:
        await stop_event.wait()
        logger.info("🛑 Shutdown signal received, initiating graceful shutdown...")
    finally:
        # Cleanup drains background fulfillments before the clients close
        await runner.cleanup()
        await registrar.close()
        await hosting.close()
        close_connection_pool()
        logger.info("✅ Cleanup completed")


def main():
    """Main entry point"""
    logger.info("🚀 Starting order fulfillment service...")
    try:
        settings = Settings.from_env()
        settings.validate_for_server()
    except ConfigurationError as e:
        logger.error(f"💥 Configuration error: {e}")
        sys.exit(1)

    settings.log_summary()

    try:
        asyncio.run(run_service(settings))
    except (ConfigurationError, DatabaseError) as e:
        logger.error(f"💥 Critical startup failure: {e}")
        sys.exit(1)
    logger.info("✅ Service stopped normally")


if __name__ == '__main__':
    main()
