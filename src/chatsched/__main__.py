"""Entry point: python -m chatsched"""

from __future__ import annotations

import asyncio
import importlib
import signal
import sys

from chatsched.infrastructure.config import RUNNER_IMPORT_PATH
from chatsched.infrastructure.logger import install_exception_hooks, logger
from chatsched.scheduling.collaborators import TaskRunner


def load_runner(import_path: str) -> TaskRunner:
    """Resolve "package.module:attribute" to a TaskRunner.

    The attribute may be a runner instance or a zero-argument factory (e.g. a
    class) returning one.
    """
    module_name, sep, attr = import_path.partition(":")
    if not module_name or not sep or not attr:
        raise ValueError(f"Runner import path must look like 'package.module:attribute', got {import_path!r}")
    target = getattr(importlib.import_module(module_name), attr)
    runner = target if hasattr(target, "run") and not isinstance(target, type) else target()
    if not callable(getattr(runner, "run", None)):
        raise TypeError(f"{import_path} does not provide a run() coroutine")
    return runner


async def main(runner: TaskRunner) -> None:
    from chatsched.app import TaskEngine

    engine = TaskEngine(runner)

    # Handle graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await engine.start()
        await shutdown_event.wait()
    finally:
        await engine.shutdown()


def run() -> None:
    install_exception_hooks()

    if not RUNNER_IMPORT_PATH:
        print("CHATSCHED_RUNNER is not set (expected 'package.module:attribute')", file=sys.stderr)
        sys.exit(2)
    try:
        runner = load_runner(RUNNER_IMPORT_PATH)
    except (ImportError, AttributeError, TypeError, ValueError) as err:
        logger.error("Could not load task runner", path=RUNNER_IMPORT_PATH, error=str(err))
        sys.exit(2)

    try:
        asyncio.run(main(runner))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
