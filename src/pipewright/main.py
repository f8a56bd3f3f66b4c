"""
Main entry point for the pipewright service processes.
"""

import argparse
import asyncio
import json
import signal
import sys

from . import __version__
from .config.container import Container, setup_container
from .config.settings import Settings, load_settings
from .messaging.endpoints import ORCHESTRATOR_ENDPOINT
from .messaging.model import CancelRun, CreateRun, Message, new_trace_id
from .messaging.spi import create_sender
from .observability.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pipewright", description="Pipeline job orchestration")
    parser.add_argument("--version", action="version", version=f"pipewright {__version__}")
    parser.add_argument("--config", default=None, help="JSON settings file")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("orchestrator", help="Consume the orchestrator inbox and run the job monitor")
    sub.add_parser("monitor", help="Run the job monitor sweeps only")
    sub.add_parser("init-db", help="Create the state store tables")

    create = sub.add_parser("create-run", help="Store a run and send CreateRun to the inbox")
    create.add_argument("jobs", help="JSON file mapping stage names to job configurations")
    create.add_argument(
        "--label", action="append", default=[], metavar="KEY=VALUE", help="Run label"
    )

    cancel = sub.add_parser("cancel-run", help="Send CancelRun to the inbox")
    cancel.add_argument("run_id", type=int)
    cancel.add_argument("--reason", default="cancelled")
    return parser


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Not supported on this platform; KeyboardInterrupt still ends the process
            pass


async def run_orchestrator(container: Container, stop: asyncio.Event) -> None:
    """Run the inbox receive loop and the job monitor until ``stop`` is set."""
    receiver = container.get("inbox_receiver")
    monitor = container.get("monitor")

    receive_task = asyncio.create_task(receiver.run(), name="orchestrator-inbox")
    monitor_task = asyncio.create_task(monitor.run(stop), name="job-monitor")
    stop_task = asyncio.create_task(stop.wait(), name="stop")

    await asyncio.wait(
        {receive_task, monitor_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
    )
    logger.info("Shutting down orchestrator")
    stop.set()
    receiver.stop()
    results = await asyncio.gather(receive_task, monitor_task, stop_task, return_exceptions=True)
    for result in results:
        if isinstance(result, Exception):
            logger.error(f"Task ended with error: {result}")


async def run_monitor(container: Container, stop: asyncio.Event) -> None:
    await container.get("monitor").run(stop)


async def create_run(settings: Settings, container: Container, jobs_path: str, labels) -> int:
    with open(jobs_path, encoding="utf-8") as f:
        job_configs = json.load(f)
    label_map = dict(label.split("=", 1) for label in labels)

    store = container.get("state_store")
    run = await asyncio.to_thread(store.create_run, job_configs, labels=label_map)

    sender = create_sender(ORCHESTRATOR_ENDPOINT, settings)
    try:
        await sender.send(Message.create(run.trace_id, run.id, CreateRun(run_id=run.id)))
    finally:
        await sender.close()
    logger.info("Run created", run_id=run.id, stages=sorted(job_configs))
    return run.id


async def cancel_run(settings: Settings, container: Container, run_id: int, reason: str) -> None:
    run = await asyncio.to_thread(container.get("state_store").get_run, run_id)
    trace_id = run.trace_id if run else new_trace_id()

    sender = create_sender(ORCHESTRATOR_ENDPOINT, settings)
    try:
        await sender.send(Message.create(trace_id, run_id, CancelRun(reason=reason)))
    finally:
        await sender.close()


async def _run_command(args, settings: Settings) -> int:
    container = setup_container(settings)
    async with container.lifespan():
        if args.command == "init-db":
            await asyncio.to_thread(container.get("state_store").create_schema)
            return 0

        if args.command == "create-run":
            run_id = await create_run(settings, container, args.jobs, args.label)
            print(run_id)
            return 0

        if args.command == "cancel-run":
            await cancel_run(settings, container, args.run_id, args.reason)
            return 0

        stop = asyncio.Event()
        _install_signal_handlers(stop)
        if args.command == "orchestrator":
            await run_orchestrator(container, stop)
        else:
            await run_monitor(container, stop)
        return 0


def main(argv=None) -> int:
    """Main application entry point."""
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.observability.log_level)

    logger.info(
        "pipewright starting",
        version=__version__,
        command=args.command,
    )
    return asyncio.run(_run_command(args, settings))


def cli_main():
    """CLI entry point."""
    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\npipewright shutdown")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        print(f"Startup failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
