"""Automatic approval of gateway device pairing requests.

One supervisor covers both operating modes:
- window: approve already-pending requests once, listen for new ones for a
  fixed number of seconds, then close the channel.
- daemon (no window): listen until the channel closes and re-scan pending
  requests every scan_interval seconds.

Approvals are independent: a failed approval is logged and never stops the
supervisor. The same request may be approved twice when the event and a
scan race; the gateway is expected to tolerate that.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sidecar.config import PairingConfig, TimeoutsConfig
from sidecar.errors import SidecarError
from sidecar.rpc import RpcClient

logger = logging.getLogger(__name__)

PAIR_REQUESTED_EVENT = "device.pair.requested"
PAIR_LIST_METHOD = "device.pair.list"
PAIR_APPROVE_METHOD = "device.pair.approve"


@dataclass(frozen=True)
class PairingRequest:
    """A pending pairing claim owned by the gateway."""

    request_id: str
    device_id: str = ""
    client_id: str = ""
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        """Human-readable name for logs."""
        return self.display_name or self.client_id

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["PairingRequest"]:
        """Parse an event payload or list entry.

        Returns:
            The request, or None if it has no usable requestId.
        """
        if not isinstance(payload, dict):
            return None
        request_id = payload.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            return None
        return cls(
            request_id=request_id,
            device_id=str(payload.get("deviceId") or ""),
            client_id=str(payload.get("clientId") or ""),
            display_name=payload.get("displayName") or None,
        )


@dataclass
class PairingStats:
    """Approval counters for one supervisor run."""

    attempted: int = 0
    approved: int = 0
    failed: int = 0
    scans: int = 0


class PairingSupervisor:
    """Approves pairing requests over an authenticated RPC client."""

    def __init__(
        self,
        rpc: RpcClient,
        window_seconds: Optional[float] = None,
        scan_interval: float = 30.0,
        approve_timeout: float = 10.0,
        list_timeout: float = 10.0,
        linger_seconds: float = 1.0,
    ):
        """Initialize supervisor.

        Args:
            rpc: RPC client on an authenticated channel.
            window_seconds: Length of the approval window. None runs until
                the channel closes.
            scan_interval: Seconds between pending-request scans when no
                window is set.
            approve_timeout: Wait bound for each approve call.
            list_timeout: Wait bound for each list call.
            linger_seconds: Pause after closing the channel at window end.
        """
        self._rpc = rpc
        self._window = window_seconds
        self._scan_interval = scan_interval
        self._approve_timeout = approve_timeout
        self._list_timeout = list_timeout
        self._linger = linger_seconds
        self.stats = PairingStats()

    @classmethod
    def from_config(
        cls,
        rpc: RpcClient,
        pairing: PairingConfig,
        timeouts: TimeoutsConfig,
    ) -> "PairingSupervisor":
        """Build a supervisor for the configured pairing mode."""
        window = pairing.window_seconds if pairing.mode == "window" else None
        return cls(
            rpc,
            window_seconds=window,
            scan_interval=pairing.scan_interval,
            approve_timeout=timeouts.approve,
            list_timeout=timeouts.list,
            linger_seconds=pairing.linger_seconds,
        )

    @property
    def window_seconds(self) -> Optional[float]:
        return self._window

    async def run(self) -> None:
        """Run in the configured mode until done."""
        if self._window is None:
            await self._run_daemon()
        else:
            await self._run_window(self._window)

    async def approve(self, request: PairingRequest) -> bool:
        """Approve one pairing request.

        Returns:
            True if the gateway accepted the approval.
        """
        logger.info(
            f"Auto-approving device pairing: {request.device_id} ({request.label})"
        )
        self.stats.attempted += 1
        try:
            await self._rpc.request(
                PAIR_APPROVE_METHOD,
                {"requestId": request.request_id},
                timeout=self._approve_timeout,
            )
        except SidecarError as e:
            self.stats.failed += 1
            logger.warning(f"Pairing approval failed for {request.device_id}: {e}")
            return False

        self.stats.approved += 1
        logger.info(f"Pairing approved for device: {request.device_id}")
        return True

    async def scan_pending(self) -> int:
        """Approve every request the gateway lists as pending.

        Returns:
            Number of approvals attempted.
        """
        self.stats.scans += 1
        try:
            result = await self._rpc.request(
                PAIR_LIST_METHOD, timeout=self._list_timeout
            )
        except SidecarError as e:
            logger.warning(f"Pairing list unavailable: {e}")
            return 0

        pending = result.get("pending") if isinstance(result, dict) else None
        if not isinstance(pending, list):
            pending = []
        requests = [
            request
            for request in map(PairingRequest.from_payload, pending)
            if request is not None
        ]

        if requests:
            logger.info(
                f"Found {len(requests)} pending pairing request(s), auto-approving..."
            )
        for request in requests:
            await self.approve(request)
        return len(requests)

    async def _on_pair_requested(self, payload: Any) -> None:
        request = PairingRequest.from_payload(payload)
        if request is None:
            logger.debug("Ignoring pairing event without requestId")
            return
        await self.approve(request)

    async def _run_window(self, window: float) -> None:
        channel = self._rpc.channel
        subscription = self._rpc.on_event(PAIR_REQUESTED_EVENT, self._on_pair_requested)
        logger.info(f"Listening for device pairing requests for {window:g}s...")
        scan_task = asyncio.create_task(self.scan_pending())

        try:
            async with asyncio.timeout(window):
                await channel.wait_closed()
            logger.warning("Gateway connection closed before pairing window ended")
        except asyncio.TimeoutError:
            pass
        finally:
            subscription.cancel()
            await self._cancel(scan_task)

        # In-flight approvals are not awaited.
        logger.info("Pairing window closed. Disconnecting.")
        await channel.close()
        await asyncio.sleep(self._linger)

    async def _run_daemon(self) -> None:
        channel = self._rpc.channel
        subscription = self._rpc.on_event(PAIR_REQUESTED_EVENT, self._on_pair_requested)
        logger.info(
            f"Listening for device pairing requests "
            f"(re-scan every {self._scan_interval:g}s)..."
        )
        scan_task = asyncio.create_task(self._scan_loop())

        try:
            await channel.wait_closed()
            logger.warning("Gateway connection closed")
        finally:
            subscription.cancel()
            await self._cancel(scan_task)

    async def _scan_loop(self) -> None:
        """Re-scan pending requests for the life of the channel."""
        while True:
            try:
                await self.scan_pending()
                await asyncio.sleep(self._scan_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Pairing scan loop error: {e}")
                await asyncio.sleep(self._scan_interval)

    @staticmethod
    async def _cancel(task: asyncio.Task) -> None:
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
