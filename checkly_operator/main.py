"""Checkly operator main application."""

import asyncio
import logging
import signal
from typing import Optional

from . import __version__
from .cluster import ClusterConnection
from .config import Settings, get_settings
from .external import ChecklyClient
from .manager import OperatorManager
from .store import KubernetesStore
from .watch import ResourceWatcher

logger = logging.getLogger(__name__)


class Application:
    """Main application orchestrator."""

    def __init__(self, settings: Settings):
        """
        Initialize application.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.cluster: Optional[ClusterConnection] = None
        self.checkly: Optional[ChecklyClient] = None
        self.manager: Optional[OperatorManager] = None
        self._shutdown = False

    async def start(self) -> None:
        """Start the application."""
        logger.info("🚀 Starting Checkly operator...")
        logger.info(f"   Version: {__version__}")
        logger.info(f"   Domain: {self.settings.controller_domain}")
        logger.info(f"   Namespace: {self.settings.watch_namespace or 'all'}")

        self.cluster = ClusterConnection(
            kubeconfig_path=self.settings.kubeconfig_path,
            context=self.settings.kube_context,
        )
        self.checkly = ChecklyClient(
            api_key=self.settings.checkly_api_key,
            account_id=self.settings.checkly_account_id,
            base_url=self.settings.checkly_base_url,
            timeout=self.settings.http_timeout_seconds,
            max_attempts=self.settings.http_max_attempts,
        )

        group = self.settings.controller_domain
        version = self.settings.api_version
        self.manager = OperatorManager(
            self.settings,
            KubernetesStore(self.cluster, group=group, version=version),
            self.checkly.resource,
            watcher=ResourceWatcher(self.cluster, group=group, version=version),
        )
        await self.manager.start()

        logger.info("✓ Checkly operator started successfully")

        # Run until shutdown signal
        try:
            while not self._shutdown:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Stop the application."""
        logger.info("🛑 Shutting down Checkly operator...")
        self._shutdown = True

        if self.manager:
            await self.manager.stop()
        if self.checkly:
            await self.checkly.close()
        if self.cluster:
            self.cluster.close()

        logger.info("✓ Checkly operator stopped")

    def handle_signal(self, sig: int) -> None:
        """
        Handle shutdown signals.

        Args:
            sig: Signal number
        """
        logger.info(f"Received signal {sig}, initiating shutdown...")
        self._shutdown = True


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = Application(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.handle_signal, sig)

    try:
        await app.start()
    finally:
        await app.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
