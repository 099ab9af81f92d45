"""Sidecar orchestration - ties identity, handshake and pairing together."""

import asyncio
import json
import logging
import signal
from typing import Any, Mapping, Optional

from sidecar.channel import ChannelProtocol, GatewayChannel
from sidecar.config import GATEWAY_URL, Config, read_token
from sidecar.errors import AuthDeniedError, ConfigMissingError, SidecarError
from sidecar.handshake import Handshake, Session
from sidecar.identity import DeviceIdentity, generate_identity
from sidecar.logging import redact_secret
from sidecar.pairing import PairingSupervisor
from sidecar.rpc import RpcClient

logger = logging.getLogger(__name__)


class Sidecar:
    """Authenticates to the gateway and supervises pairing approvals.

    Responsibilities:
    - Generate an ephemeral device identity
    - Open the gateway channel and run the signed connect handshake
    - Log gateway config and health
    - Run the pairing supervisor in window or daemon mode
    - Close the channel on shutdown signals
    """

    def __init__(
        self,
        config: Config,
        token: str,
        gateway_url: str = GATEWAY_URL,
        channel: Optional[ChannelProtocol] = None,
        identity: Optional[DeviceIdentity] = None,
        install_signal_handlers: bool = True,
    ):
        """Initialize sidecar.

        Args:
            config: Sidecar configuration.
            token: Gateway bearer token.
            gateway_url: WebSocket endpoint (overridable for testing).
            channel: Optional injected channel (for testing).
            identity: Optional injected identity (for testing).
            install_signal_handlers: Close the channel on SIGINT/SIGTERM.
        """
        self._config = config
        self._token = token
        self._channel: ChannelProtocol = channel or GatewayChannel(gateway_url)
        self._rpc = RpcClient(self._channel, default_timeout=config.timeouts.request)
        self._identity = identity
        self._install_signal_handlers = install_signal_handlers
        self._signals_installed: list[int] = []
        self._stopped = False
        self.handshake: Optional[Handshake] = None
        self.session: Optional[Session] = None
        self.supervisor: Optional[PairingSupervisor] = None

    @property
    def identity(self) -> Optional[DeviceIdentity]:
        return self._identity

    @property
    def rpc(self) -> RpcClient:
        return self._rpc

    async def run(self) -> None:
        """Authenticate and run the pairing supervisor.

        Raises:
            SidecarError: If the handshake fails.
        """
        if self._identity is None:
            logger.info("Generating device identity...")
            self._identity = generate_identity()
        logger.info(f"Device ID: {self._identity.device_id}")

        logger.info("Connecting to gateway via loopback...")
        self.handshake = Handshake(
            self._channel,
            self._rpc,
            self._identity,
            self._token,
            client=self._config.client,
            timeouts=self._config.timeouts,
        )
        self.session = await self.handshake.run()

        if self._config.diagnostics:
            await self.report_gateway_state()

        self._setup_signals()

        self.supervisor = PairingSupervisor.from_config(
            self._rpc, self._config.pairing, self._config.timeouts
        )
        await self.supervisor.run()

        if self._stopped:
            logger.info("Sidecar stopped before pairing finished")
        elif self.supervisor.window_seconds is not None:
            logger.info("Gateway configuration complete!")

    async def report_gateway_state(self) -> None:
        """Log the gateway's current config and health."""
        timeout = self._config.timeouts.request

        logger.info("Fetching current config...")
        try:
            result = await self._rpc.request("config.get", timeout=timeout)
            config = result.get("config") if isinstance(result, dict) else None
            logger.info(f"Current config:\n{_pretty(config)}")
        except SidecarError as e:
            logger.warning(f"Config fetch failed: {e}")

        logger.info("Checking gateway health...")
        try:
            health = await self._rpc.request("health", timeout=timeout)
            logger.info(f"Health:\n{_pretty(health)}")
        except SidecarError as e:
            logger.warning(f"Health check failed: {e}")

    async def stop(self) -> None:
        """Stop the sidecar by closing the gateway channel."""
        logger.info("Stopping sidecar...")
        self._stopped = True
        await self._channel.close()

    async def close(self) -> None:
        """Release the channel and signal handlers."""
        self._remove_signals()
        await self._channel.close()
        self._rpc.detach()

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        if not self._install_signal_handlers:
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop()),
                )
            except (NotImplementedError, RuntimeError):
                continue
            self._signals_installed.append(sig)

    def _remove_signals(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, default=str)


async def run_sidecar(
    config: Config,
    environ: Optional[Mapping[str, str]] = None,
    gateway_url: str = GATEWAY_URL,
    channel: Optional[ChannelProtocol] = None,
    install_signal_handlers: bool = True,
) -> int:
    """Run the sidecar to completion.

    Never fails the host process: every outcome returns exit status 0.

    Args:
        config: Sidecar configuration.
        environ: Injectable environment mapping for testing.
        gateway_url: WebSocket endpoint (overridable for testing).
        channel: Optional injected channel (for testing).
        install_signal_handlers: Close the channel on SIGINT/SIGTERM.

    Returns:
        Process exit status.
    """
    try:
        token = read_token(config, environ)
    except ConfigMissingError as e:
        logger.error(str(e))
        return 0
    redact_secret(token)

    sidecar = Sidecar(
        config,
        token,
        gateway_url=gateway_url,
        channel=channel,
        install_signal_handlers=install_signal_handlers,
    )
    try:
        await sidecar.run()
    except AuthDeniedError as e:
        logger.error(f"Authentication denied: {e}")
    except SidecarError as e:
        logger.error(f"Error: {e}")
    except Exception as e:
        logger.error(f"Unexpected error: {type(e).__name__}: {e}")
    finally:
        await sidecar.close()
    return 0
