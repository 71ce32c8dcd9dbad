"""
HTTP surface for the fulfillment service

Routes:
- POST /api/stripe/webhook   payment notifications (signature checked on the raw body)
- POST /api/orders           order intake: quote, PENDING order, payment intent
- POST /api/user/create      registrant profile upsert
- GET  /health, /healthz     database and process health

Payment notification responses:
- 400 invalid signature, malformed body, missing order id
- 200 {received: true} for ignored, already-processed and processed events
- 200 {received: true, processing: true} when fulfillment outlives the acknowledgement window
- 500 unexpected failure during fulfillment (the notifier retries; fulfillment is idempotent)
"""

import json
import asyncio
import logging
from typing import Optional, Set

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from fulfillment_config import Settings
from fulfillment_errors import ConfigurationError, FulfillmentError, ProviderUnavailableError, ValidationError
from health_monitor import HealthMonitor
from order_models import PAYMENT_SUCCEEDED_EVENT, PaymentSucceededEvent
from services.checkout import CheckoutService
from services.fulfillment_orchestrator import FulfillmentOrchestrator
from webhook_signature import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

SETTINGS_KEY = web.AppKey('settings', Settings)
ORCHESTRATOR_KEY = web.AppKey('orchestrator', FulfillmentOrchestrator)
CHECKOUT_KEY = web.AppKey('checkout', CheckoutService)
HEALTH_KEY = web.AppKey('health_monitor', HealthMonitor)
BACKGROUND_TASKS_KEY = web.AppKey('background_tasks', Set[asyncio.Task])

# ====================================================================
# PAYMENT NOTIFICATIONS
# ====================================================================

def _track_background_fulfillment(app: web.Application, task: asyncio.Task, order_id: str) -> None:
    tasks = app[BACKGROUND_TASKS_KEY]
    tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        tasks.discard(finished)
        if finished.cancelled():
            logger.warning(f"⚠️ Background fulfillment for order {order_id} was cancelled")
            return
        error = finished.exception()
        if error is not None:
            app[HEALTH_KEY].update_error_count(f"order {order_id}: {error}")
            logger.error(f"❌ Background fulfillment for order {order_id} failed: {error}")
        else:
            outcome = finished.result()
            logger.info(f"✅ Background fulfillment for order {order_id} finished: {outcome.disposition}")

    task.add_done_callback(_done)


async def payment_webhook_handler(request: Request) -> Response:
    """Verify, parse and fulfill a payment notification"""
    settings = request.app[SETTINGS_KEY]
    raw_body = await request.read()

    if not verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), settings.webhook_secret,
                            settings.webhook_tolerance_seconds):
        return web.json_response({'error': 'Webhook Error: invalid signature'}, status=400)

    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("🚫 Payment notification body is not valid JSON")
        return web.json_response({'error': 'Webhook Error: malformed body'}, status=400)
    if not isinstance(payload, dict):
        return web.json_response({'error': 'Webhook Error: malformed body'}, status=400)

    event_type = payload.get('type')
    if event_type != PAYMENT_SUCCEEDED_EVENT:
        logger.info(f"📡 Unhandled event type {event_type}")
        return web.json_response({'received': True})

    try:
        event = PaymentSucceededEvent.from_payload(payload)
    except ValidationError as e:
        logger.warning(f"🚫 Malformed {PAYMENT_SUCCEEDED_EVENT} event: {e}")
        return web.json_response({'error': f'Webhook Error: {e}'}, status=400)

    if not event.order_id:
        logger.error("❌ Order ID not found in payment intent metadata")
        return web.json_response({'error': 'Order ID missing'}, status=400)

    orchestrator = request.app[ORCHESTRATOR_KEY]
    task = asyncio.create_task(orchestrator.fulfill(event))
    try:
        outcome = await asyncio.wait_for(asyncio.shield(task), timeout=settings.webhook_ack_window)
    except asyncio.TimeoutError:
        logger.warning(f"⏳ Fulfillment of order {event.order_id} still running after "
                       f"{settings.webhook_ack_window}s - acknowledging and finishing in background")
        _track_background_fulfillment(request.app, task, event.order_id)
        return web.json_response({'received': True, 'processing': True, 'orderId': event.order_id})
    except Exception as e:
        request.app[HEALTH_KEY].update_error_count(f"order {event.order_id}: {e}")
        logger.error(f"❌ Failed to process {PAYMENT_SUCCEEDED_EVENT} for order {event.order_id}: {e}")
        return web.json_response({'error': 'Failed to process order'}, status=500)

    return web.json_response({
        'received': True,
        'orderId': outcome.order_id,
        'disposition': outcome.disposition,
        'status': outcome.status.value if outcome.status else None,
    })

# ====================================================================
# ORDER INTAKE
# ====================================================================

async def _read_json(request: Request):
    try:
        return await request.json()
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")


async def create_order_handler(request: Request) -> Response:
    """Create a PENDING order and its payment intent"""
    checkout = request.app.get(CHECKOUT_KEY)
    if checkout is None:
        return web.json_response({'error': 'Order intake is not configured'}, status=503)

    try:
        result = await checkout.create_checkout(await _read_json(request))
    except ValidationError as e:
        return web.json_response({'error': str(e), 'details': e.errors}, status=400)
    except ProviderUnavailableError as e:
        logger.error(f"❌ Order intake failed at {e.provider}: {e}")
        return web.json_response({'error': f'{e.provider} unavailable'}, status=502)
    except ConfigurationError as e:
        logger.error(f"❌ Order intake misconfigured: {e}")
        return web.json_response({'error': 'Server configuration error'}, status=500)
    except FulfillmentError as e:
        logger.error(f"❌ Error creating payment intent: {e}")
        return web.json_response({'error': 'Internal Server Error'}, status=500)

    return web.json_response(result)


async def create_user_handler(request: Request) -> Response:
    """Create or update a registrant profile keyed by email"""
    checkout = request.app.get(CHECKOUT_KEY)
    if checkout is None:
        return web.json_response({'error': 'Order intake is not configured'}, status=503)

    try:
        result = await checkout.register_user(await _read_json(request))
    except ValidationError as e:
        return web.json_response({'error': 'Missing required user information', 'details': e.errors or [str(e)]},
                                 status=400)
    except FulfillmentError as e:
        logger.error(f"❌ Error creating/updating user: {e}")
        return web.json_response({'error': 'Internal Server Error'}, status=500)

    return web.json_response(result)

# ====================================================================
# HEALTH
# ====================================================================

async def health_handler(request: Request) -> Response:
    monitor = request.app[HEALTH_KEY]
    status = await monitor.perform_health_check()
    status['service'] = 'order_fulfillment'
    status['background_fulfillments'] = len(request.app[BACKGROUND_TASKS_KEY])
    return web.json_response(status, status=503 if status['overall'] == 'degraded' else 200)

# ====================================================================
# APPLICATION
# ====================================================================

async def _drain_background_fulfillments(app: web.Application) -> None:
    tasks = list(app[BACKGROUND_TASKS_KEY])
    if tasks:
        logger.info(f"⏳ Waiting for {len(tasks)} background fulfillment(s) before shutdown")
        await asyncio.gather(*tasks, return_exceptions=True)


def create_app(settings: Settings, orchestrator: FulfillmentOrchestrator,
               checkout: Optional[CheckoutService] = None,
               health_monitor: Optional[HealthMonitor] = None) -> web.Application:
    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[ORCHESTRATOR_KEY] = orchestrator
    if checkout is not None:
        app[CHECKOUT_KEY] = checkout
    app[HEALTH_KEY] = health_monitor or HealthMonitor()
    app[BACKGROUND_TASKS_KEY] = set()

    app.router.add_post('/api/stripe/webhook', payment_webhook_handler)
    app.router.add_post('/api/orders', create_order_handler)
    app.router.add_post('/api/user/create', create_user_handler)
    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)

    app.on_cleanup.append(_drain_background_fulfillments)
    return app


async def start_webhook_server(app: web.Application, port: int = 5000) -> web.AppRunner:
    """Start the aiohttp server in the current event loop"""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, '0.0.0.0', port)
    await site.start()
    logger.info(f"✅ Webhook server started on http://0.0.0.0:{port}")
    logger.info("🔗 Payment webhook: /api/stripe/webhook | Health: /health, /healthz")
    return runner
