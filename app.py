import asyncio
import logging
import platform
from typing import Optional, Set

from aiohttp import web
from colorama import init

import utils.func as func
from messaging.intake import (
    UPDATE_BUSINESS_CONNECTION,
    UPDATE_BUSINESS_MESSAGE,
    UPDATE_MESSAGE,
    chat_id_of,
    parse_update,
)
from messaging.pipeline import RelayController
from utils.config_manager import RelayConfig, load_relay_config

# Initialize colorama for colored logs
init(autoreset=True)

# For Windows compatibility with asyncio
if platform.system() == "Windows":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

log = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", RelayConfig)
CONTROLLER_KEY = web.AppKey("controller", RelayController)
TASKS_KEY = web.AppKey("background_tasks", set)

STATUS_FOR_UPDATE = {
    UPDATE_BUSINESS_MESSAGE: "business_message_processed",
    UPDATE_MESSAGE: "message_processed",
}


def _schedule(app: web.Application, coro) -> asyncio.Task:
    """Run a coroutine after the webhook answered, keeping a reference until it ends."""
    tasks: Set[asyncio.Task] = app[TASKS_KEY]
    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


async def handle_webhook(request: web.Request) -> web.Response:
    """Telegram webhook endpoint"""
    config = request.app[CONFIG_KEY]
    controller = request.app[CONTROLLER_KEY]

    missing = config.missing_credentials()
    if missing:
        log.error("Missing environment variables: %s", ", ".join(missing))
        return web.json_response(
            {"error": "Missing environment variables", "missing": missing}, status=500
        )

    try:
        update = await request.json()
    except ValueError:
        return web.json_response({"error": "Invalid request body"}, status=400)

    if not isinstance(update, dict):
        return web.json_response({"error": "Invalid request body"}, status=400)

    log.debug("Received update %s", update.get("update_id"))

    try:
        kind, message = parse_update(update, config.media_placeholder)

        if kind == UPDATE_BUSINESS_CONNECTION:
            log.info("Business connection update received")
            return web.json_response({"status": "business_connection_processed"})

        if message is None:
            return web.json_response({"status": "no_action_needed"})

        if config.background_processing:
            _schedule(request.app, controller.handle(message))
        else:
            await controller.handle(message)
        return web.json_response({"status": STATUS_FOR_UPDATE[kind]})

    except Exception as e:
        log.error("Webhook processing error: %s", e, exc_info=True)
        await controller.send_error_notice(chat_id_of(update))
        # Telegram must not redeliver the update
        return web.json_response({"status": "error_handled"})


async def handle_health(request: web.Request) -> web.Response:
    """Health check with store statistics"""
    controller = request.app[CONTROLLER_KEY]
    return web.json_response({
        "status": "ok",
        "sessions": controller.sessions.get_stats(),
        "rate_limiter": controller.rate_limiter.get_stats(),
    })


async def on_startup(app: web.Application) -> None:
    app[CONTROLLER_KEY].start()
    log.info("Relay started, webhook path %s", app[CONFIG_KEY].webhook_path)


async def on_cleanup(app: web.Application) -> None:
    """Wait for background updates, then release the stores and clients"""
    tasks = list(app[TASKS_KEY])
    if tasks:
        log.info("Waiting for %d background updates", len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)

    await app[CONTROLLER_KEY].stop()
    log.debug("Relay shutdown complete")


def create_app(config: RelayConfig, controller: Optional[RelayController] = None) -> web.Application:
    """
    Build the web application.

    Args:
        config: Relay configuration
        controller: Pre-built controller (tests), built from config when None

    Returns:
        web.Application with the webhook and health routes
    """
    app = web.Application()
    app[CONFIG_KEY] = config
    app[CONTROLLER_KEY] = controller or RelayController.from_config(config)
    app[TASKS_KEY] = set()

    app.router.add_post(config.webhook_path, handle_webhook)
    app.router.add_get("/health", handle_health)

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


def main(config_path: str = "config.yml") -> None:
    config = load_relay_config(config_path)
    func.setup_logging(config.debug_mode, config.log_file)

    missing = config.missing_credentials()
    if missing:
        log.warning("Credentials not configured: %s (webhook will answer 500)", ", ".join(missing))

    try:
        web.run_app(create_app(config), host=config.webhook_host, port=config.webhook_port)
    except Exception as e:
        log.critical("Fatal runtime error: %s", e)


# Start the relay
if __name__ == "__main__":
    main()
