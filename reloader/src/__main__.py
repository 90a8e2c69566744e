from __future__ import annotations

import logging
import os
import signal
import threading

from reloader.src.alerts import WebhookAlerter
from reloader.src.config import env_int, load_options
from reloader.src.controller import build_controller_from_env
from reloader.src.handlers import ResourceEventHandler
from reloader.src.health import start_health_server
from reloader.src.kube import build_clients, load_kube_configuration
from reloader.src.leader import LeaseLeaderElector, load_leader_settings
from reloader.src.logs import configure_logging
from reloader.src.metrics import METRICS
from reloader.src.pause import DeploymentPauser, PauseTimerRegistry
from reloader.src.upgrade import RollingUpgrader
from reloader.src.workloads import build_adapter_table

RUNTIME_VERSION = "0.1.0"


def main() -> None:
    """Reloader entrypoint: configure logging, start leader election, and run the watchers."""
    configure_logging()
    logger = logging.getLogger(__name__)
    options = load_options()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "reload_strategy": options.reload_strategy,
        }
    )

    load_kube_configuration()
    clients = build_clients()

    pauser = DeploymentPauser(
        apps_api=clients.apps,
        registry=PauseTimerRegistry(),
        annotations=options.annotations,
    )
    upgrader = RollingUpgrader(
        clients=clients,
        options=options,
        adapters=build_adapter_table(options),
        pauser=pauser,
        alerter=WebhookAlerter(options.alerts),
    )
    handler = ResourceEventHandler(upgrader=upgrader, options=options)
    controller = build_controller_from_env(
        core_api=clients.core, handler=handler, options=options, pauser=pauser
    )

    leader_settings = load_leader_settings()
    leader_ready = threading.Event() if leader_settings.enabled else None
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(
        ready=controller.ready,
        port=health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_settings.enabled:
        elector = LeaseLeaderElector.from_settings(clients.coordination, leader_settings)

        controller_thread: threading.Thread | None = None
        controller_stop = threading.Event()
        controller_state_lock = threading.Lock()

        def on_started_leading() -> None:
            nonlocal controller_thread, controller_stop
            with controller_state_lock:
                if shutdown_event.is_set():
                    return
                if controller_thread is not None and controller_thread.is_alive():
                    logger.error(
                        "Refusing to start new watchers while the previous "
                        "reloader thread is still running"
                    )
                    shutdown_event.set()
                    return

                controller_stop = threading.Event()
                if leader_ready is not None:
                    leader_ready.set()

                def _run_controller() -> None:
                    unexpected_exit = False
                    try:
                        controller.run_forever(shutdown_event=controller_stop)
                        unexpected_exit = (
                            not controller_stop.is_set() and not shutdown_event.is_set()
                        )
                        if unexpected_exit:
                            logger.error(
                                "Reloader thread exited without a stop signal; "
                                "terminating process"
                            )
                    except Exception:
                        unexpected_exit = True
                        logger.exception("Reloader thread crashed")
                    finally:
                        if unexpected_exit:
                            shutdown_event.set()

                controller_thread = threading.Thread(
                    target=_run_controller, name="reloader", daemon=True
                )
                controller_thread.start()

        def on_stopped_leading() -> None:
            nonlocal controller_thread
            with controller_state_lock:
                if leader_ready is not None:
                    leader_ready.clear()

                controller.request_stop()
                controller_stop.set()
                if controller_thread is None:
                    return

                controller_thread.join(timeout=leader_settings.stop_timeout_seconds)
                if controller_thread.is_alive():
                    logger.error(
                        "Reloader thread did not stop within %ss during leadership "
                        "handoff; forcing process shutdown",
                        leader_settings.stop_timeout_seconds,
                    )
                    shutdown_event.set()
                    return

                controller_thread = None

        elector.run(
            on_started_leading=on_started_leading,
            on_stopped_leading=on_stopped_leading,
            stop_event=shutdown_event,
        )
        on_stopped_leading()
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logger.info("Reloader stopped")


if __name__ == "__main__":
    main()
