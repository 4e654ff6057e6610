"""Main entry point - orchestrates all components."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .autofocus import AutofocusController, SystemInputActivity
from .engine import StatusEngine
from .environment import FocusTarget
from .models import FocusResult
from .server import create_app

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file."""
    config_path = config_path or os.environ.get("CCSTATUS_CONFIG", DEFAULT_CONFIG_PATH)
    path = Path(os.path.expanduser(config_path))

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def setup_logging(config: dict, level: Optional[str] = None) -> None:
    """Configure root logging from the `logging` config section."""
    logging_config = config.get("logging", {})
    level_name = (level or logging_config.get("level", "INFO")).upper()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_file = logging_config.get("file")
    if log_file:
        log_path = Path(os.path.expanduser(log_file))
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


class CCStatusApp:
    """Main application orchestrator."""

    def __init__(self, config: dict, engine: Optional[StatusEngine] = None):
        self.config = config

        # Server config
        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8420)
        self.poll_interval = config.get("poll", {}).get("interval_seconds", 2.0)

        self.engine = engine or StatusEngine(config)
        self.engine.reconciler.on_revive = self._on_codex_revive

        self.autofocus = AutofocusController(
            focus=self._focus,
            acknowledge=self._acknowledge,
            is_focusable=self._is_focusable,
            input_activity=SystemInputActivity(self.engine.probe),
            config=config,
        )

        self.app = create_app(
            engine=self.engine,
            autofocus=self.autofocus,
            config=config,
        )

        self._poll_task: Optional[asyncio.Task] = None

    async def _focus(self, target: FocusTarget) -> FocusResult:
        return await asyncio.to_thread(self.engine.dispatcher.focus, target)

    async def _acknowledge(self, key: str) -> None:
        await asyncio.to_thread(self.engine.acknowledge, key)

    async def _is_focusable(self, target: FocusTarget) -> bool:
        return await asyncio.to_thread(self.engine.is_focusable, target)

    def _on_codex_revive(self, cwd: str) -> None:
        session = self.engine.observer.session_for_cwd(cwd)
        if session:
            self.autofocus.clear_cooldown(session.key)

    async def poll_once(self) -> None:
        """Pick up store writes made by other processes, then reconcile Codex."""
        running, waiting = await asyncio.to_thread(self.engine.store_transitions)
        self.autofocus.apply_transitions(running, waiting)
        changed = await asyncio.to_thread(self.engine.reconcile_codex)
        if changed:
            logger.debug(f"Codex state changed for {len(changed)} session(s)")

    async def _poll_loop(self) -> None:
        logger.info(f"Poll loop started (every {self.poll_interval}s)")
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Poll error: {e}")
            await asyncio.sleep(self.poll_interval)

    async def start(self):
        """Start all components."""
        logger.info("Starting CC Status...")

        self._poll_task = asyncio.create_task(self._poll_loop())

        # Start the web server
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")

        # Run until shutdown
        await server.serve()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping CC Status...")

        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        logger.info("Shutdown complete")


def setup_signal_handlers(app: CCStatusApp):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        asyncio.create_task(app.stop())
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main(config_path: Optional[str] = None):
    """Main entry point."""
    config = load_config(config_path)
    setup_logging(config)

    app = CCStatusApp(config)
    setup_signal_handlers(app)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def run(config_path: Optional[str] = None):
    """Entry point for console script."""
    asyncio.run(main(config_path))


if __name__ == "__main__":
    run()
