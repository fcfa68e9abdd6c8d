from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional, Sequence

from party_server.config import ServerConfig, parse_origins
from party_server.connections import ConnectionHub
from party_server.control_server import ControlServer
from party_server.coordinator import SessionCoordinator
from party_server.health import HealthServer, RecentLogBuffer, create_app
from party_server.lifecycle import RoomLifecycleManager
from party_server.registry import RoomRegistry

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def parse_args(argv: Optional[Sequence[str]] = None, *, defaults: Optional[ServerConfig] = None) -> ServerConfig:
    base = defaults or ServerConfig.from_env()
    parser = argparse.ArgumentParser(description="Watch-party room sync server")
    parser.add_argument("--host", default=base.host, help="Host/IP to bind the control server")
    parser.add_argument("--port", type=int, default=base.port, help="TCP control port")
    parser.add_argument("--health-host", default=base.health_host, help="Host for the health endpoint")
    parser.add_argument("--health-port", type=int, default=base.health_port, help="Port for the health endpoint")
    parser.add_argument(
        "--empty-room-ttl-ms",
        type=int,
        default=base.empty_room_ttl_ms,
        help="How long an empty room is kept before it is deleted",
    )
    parser.add_argument(
        "--cors-origins",
        default=",".join(base.allowed_origins),
        help="Comma separated list of allowed origins (empty allows any)",
    )
    parser.add_argument(
        "--disable-host-claim",
        action="store_true",
        default=not base.allow_host_claim,
        help="Reject host reclaim via the room host secret",
    )
    parser.add_argument("--heartbeat-timeout", type=float, default=base.heartbeat_timeout, help="Seconds between expected heartbeats")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default=base.log_level,
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=base.log_file, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=base.log_max_bytes, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=base.log_backup_count, help="Number of rotated log files to retain")
    args = parser.parse_args(argv)

    config = ServerConfig(
        host=args.host,
        port=args.port,
        health_host=args.health_host,
        health_port=args.health_port,
        empty_room_ttl_ms=max(0, args.empty_room_ttl_ms),
        allowed_origins=parse_origins(args.cors_origins),
        allow_host_claim=not args.disable_host_claim,
        heartbeat_timeout=args.heartbeat_timeout,
        log_level=args.log_level,
        log_file=args.log_file,
        log_max_bytes=args.log_max_bytes,
        log_backup_count=args.log_backup_count,
    )
    return config


def configure_logging(config: ServerConfig) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        from logging.handlers import RotatingFileHandler

        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=max(1024, config.log_max_bytes),
            backupCount=max(1, config.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=log_handlers,
        force=True,
    )


async def serve(config: ServerConfig) -> None:
    registry = RoomRegistry()
    lifecycle = RoomLifecycleManager(registry, ttl_seconds=config.empty_room_ttl_seconds)
    hub = ConnectionHub(heartbeat_timeout=config.heartbeat_timeout)
    coordinator = SessionCoordinator(
        registry,
        lifecycle,
        hub,
        allow_host_claim=config.allow_host_claim,
    )
    control_server = ControlServer(config.host, config.port, coordinator, hub)
    log_buffer = RecentLogBuffer()
    server_logger = logging.getLogger("party_server")
    server_logger.addHandler(log_buffer)
    health_server = HealthServer(
        create_app(coordinator, hub, allowed_origins=config.allowed_origins, log_buffer=log_buffer),
        host=config.health_host,
        port=config.health_port,
    )

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if stop_event.is_set():
            logger.debug("Shutdown already in progress")
            return
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # no loop signal support here; main() catches KeyboardInterrupt instead
            pass

    await control_server.start()
    await health_server.start()
    heartbeat_task = asyncio.create_task(hub.heartbeat_watcher())
    logger.info(
        "Serving rooms (empty room TTL %.0fs, host claim %s)",
        config.empty_room_ttl_seconds,
        "enabled" if config.allow_host_claim else "disabled",
    )

    await stop_event.wait()

    logger.info("Shutdown signal processed; stopping services")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        pass

    try:
        await hub.close_all()
    except Exception:
        logger.exception("Failed to disconnect clients during shutdown")

    try:
        await control_server.stop()
    except Exception:
        logger.exception("Error stopping control server")

    cancelled = lifecycle.cancel_all()
    logger.debug("Cancelled %d pending room deletions", cancelled)

    try:
        await health_server.stop()
    except Exception:
        logger.exception("Error stopping health server")

    logger.info("Shutdown complete")
    server_logger.removeHandler(log_buffer)


def main(argv: Optional[Sequence[str]] = None) -> None:
    config = parse_args(argv)
    configure_logging(config)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
