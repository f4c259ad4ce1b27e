import argparse
import logging
import sys

from nicegui import app as ng_app
from nicegui import ui

from looper_bridge.common.logging_config import TRACE, configure_logging
from looper_bridge.config import BridgeConfig
from looper_bridge.constants import LOG_LEVEL, SERVER_HOST, SERVER_PORT
from looper_bridge.pages.dashboard import DashboardPage
from looper_bridge.services.device_link import DeviceLink, SocketFatalError
from looper_bridge.services.status_hub import StatusHub

# Device-connectivity core, one per process
config = BridgeConfig.from_env()
hub = StatusHub(queue_size=config.SUBSCRIBER_QUEUE_SIZE)
link = DeviceLink(hub, config)


async def _app_startup() -> None:
    try:
        await link.start()
    except SocketFatalError as e:
        logging.critical("%s", e)
        raise


async def _app_shutdown() -> None:
    await link.stop()


ng_app.on_startup(_app_startup)
ng_app.on_shutdown(_app_shutdown)


@ng_app.get("/api/status")
def api_status() -> dict:
    """Read-only status for clients that do not hold a live session."""
    return hub.snapshot().to_dict()


@ui.page("/")
def index() -> None:
    page = DashboardPage(hub)
    page.build()
    client = ui.context.client
    page.attach(client.id)
    client.on_disconnect(page.detach)
    client.on_connect(page.resume)


def main() -> None:
    parser = argparse.ArgumentParser(description="Looper UDP bridge")
    parser.add_argument("--host", default=SERVER_HOST, help="Webserver bind host")
    parser.add_argument("--port", type=int, default=SERVER_PORT, help="Webserver bind port")
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set log level",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity; -v=INFO, -vv=DEBUG, -vvv=TRACE",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings")
    args, _ = parser.parse_known_args()

    # Explicit --log-level > -v/-q > LOOPER_LOG_LEVEL
    if args.log_level:
        level = TRACE if args.log_level == "TRACE" else getattr(logging, args.log_level)
    elif args.verbose >= 3:
        level = TRACE
    elif args.verbose == 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    elif args.quiet:
        level = logging.WARNING
    else:
        level = LOG_LEVEL

    configure_logging(level)
    logging.info("Webserver bind: host=%s port=%s", args.host, args.port)
    logging.info(
        "Looper target: port=%d broadcast=%s hosts=%s",
        config.DEVICE_PORT,
        config.BROADCAST_ADDR,
        ",".join(config.DEVICE_HOSTS) or "-",
    )

    ui.run(
        title="Looper Bridge",
        host=args.host,
        port=int(args.port),
        reload=False,
        show=False,
        loop="uvloop" if sys.platform != "win32" else "asyncio",
        http="httptools",
        ws="wsproto",
    )


if __name__ in {"__main__", "__mp_main__"}:
    main()
