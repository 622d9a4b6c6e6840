#!/usr/bin/env python3
"""
Yjs WebSocket Relay - Entry Point
Room registry + admission control + bounded shutdown drain
"""
import asyncio
import logging
import os
import signal
import sys
import time
from typing import Callable, Optional

from aiohttp import web

from relay.api import (
    CONFIG_KEY, ENGINE_KEY, REGISTRY_KEY, SESSIONS_KEY, STARTED_AT_KEY, SYNC_OPTIONS_KEY,
    cors_middleware, setup_routes, websocket_middleware,
)
from relay.config import RelayConfig
from relay.registry import RoomRegistry
from relay.session import SessionManager
from relay.shutdown import ShutdownCoordinator
from relay.sync import RoomBroadcastEngine, SyncEngine, SyncOptions
from relay.utils import public_ws_url
from relay.yjs import YjsDocumentEngine

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("yjs_relay")


def build_engine(config: RelayConfig) -> SyncEngine:
    if config.sync_engine == "broadcast":
        return RoomBroadcastEngine(config.sync_history_limit)
    return YjsDocumentEngine()


async def sync_engine_ctx(app: web.Application):
    engine = app[ENGINE_KEY]
    await engine.start()
    yield
    await engine.stop()


def create_app(config: RelayConfig, engine: Optional[SyncEngine] = None) -> web.Application:
    """Create and configure the aiohttp application"""
    app = web.Application(middlewares=[cors_middleware, websocket_middleware])

    registry = RoomRegistry()
    app[CONFIG_KEY] = config
    app[REGISTRY_KEY] = registry
    app[SESSIONS_KEY] = SessionManager(registry, config.max_connections)
    app[ENGINE_KEY] = engine if engine is not None else build_engine(config)
    app[SYNC_OPTIONS_KEY] = SyncOptions(enable_compaction=config.sync_compaction)
    app[STARTED_AT_KEY] = time.monotonic()
    app.cleanup_ctx.append(sync_engine_ctx)

    setup_routes(app)
    return app


async def serve(
    config: RelayConfig,
    engine: Optional[SyncEngine] = None,
    force_exit: Callable[[int], None] = os._exit,
) -> int:
    """Run until a termination signal or a process-wide fault; returns the exit status"""
    app = create_app(config, engine)
    loop = asyncio.get_running_loop()
    stop: asyncio.Future = loop.create_future()

    runner = web.AppRunner(app, handle_signals=False)
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)

    async def close_listener():
        await site.stop()

    coordinator = ShutdownCoordinator(
        app[SESSIONS_KEY], config.shutdown_grace_seconds, close_listener
    )

    def on_signal(signame: str):
        task = coordinator.request(f"received {signame}")
        if not stop.done():
            stop.set_result(task)

    def on_fault(loop, context):
        # Registry/socket accounting can't be trusted after this, so no recovery
        logger.error("💥 Unhandled async failure: %s", context.get("message"),
                     exc_info=context.get("exception"))
        if not stop.done():
            stop.set_result(None)

    signals = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal, sig.name)
            signals.append(sig)
        except NotImplementedError:
            pass
    loop.set_exception_handler(on_fault)

    try:
        try:
            await site.start()
        except OSError as e:
            logger.error("❌ Cannot listen on %s:%s: %s", config.host, config.port, e)
            await runner.cleanup()
            return 1

        logger.info("🚀 Yjs relay running on http://%s:%s", config.host, config.port)
        logger.info("🔗 WebSocket endpoint: %s/<room>",
                    public_ws_url(f"{config.host}:{config.port}", configured=config.public_ws_url))
        logger.info("👥 Max connections: %d", config.max_connections)

        status = 0
        drain = await stop
        if drain is None:
            # runner.cleanup() waits on every open socket; drain under the deadline first
            status = 1
            drain = coordinator.request("unhandled async failure")

        drained = await drain
        if not drained:
            logger.warning("⏱️ Forcing exit with sessions still open")
            force_exit(1)
            return 1

        await runner.cleanup()
        logger.info("👋 Relay stopped")
        return status
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        loop.set_exception_handler(None)


def main():
    try:
        config = RelayConfig.from_env()
    except ValueError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error("Invalid configuration: %s", e)
        sys.exit(2)

    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    sys.exit(asyncio.run(serve(config)))


if __name__ == "__main__":
    main()
