"""Keeps the node's lease in the node-lease namespace renewed while the node is healthy.

Leases and nodes are plain dicts in the API server's JSON shape. The lease
client provides ``get(name)``, ``create(lease)`` and ``update(lease)``, each
returning the stored lease (or an awaitable of it) and raising
``NotFoundError`` or ``ConflictError`` from ``kubenode.errors``.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from kubenode.errors import is_conflict, is_not_found

logger = logging.getLogger(__name__)

DEFAULT_RENEW_INTERVAL_FRACTION = 0.25
DEFAULT_LEASE_DURATION = 40
MAX_UPDATE_RETRIES = 5
MAX_BACKOFF = 7.0
INITIAL_BACKOFF = 0.1
NAMESPACE_NODE_LEASE = "kube-node-lease"

Lease = dict[str, Any]
Node = dict[str, Any]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _format_micro_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _node_meta(node: Node) -> dict[str, Any]:
    return node.get("metadata") or {}


class RealClock:
    """Wall-clock time and asyncio sleeping."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class LeaseController:
    """Renews a node lease as long as the node answers its pings.

    ``ping_controller`` provides an async ``get_result()``; ``get_server_node``
    returns (or resolves to) a copy of the node as last stored in the API
    server, raising if there is none yet. Durations are in seconds.
    """

    def __init__(
        self,
        lease_client: Any,
        lease_duration_seconds: int,
        renew_interval: float,
        ping_controller: Any,
        get_server_node: Callable[[], Any],
        clock: Optional[Any] = None,
    ) -> None:
        if lease_duration_seconds <= 0:
            raise ValueError(f"Lease duration seconds {lease_duration_seconds} is invalid, it must be > 0")
        if renew_interval == 0:
            raise ValueError(f"Lease renew interval {renew_interval}s is invalid, it must be > 0")
        if lease_duration_seconds <= renew_interval:
            raise ValueError(
                f"Lease renew interval {renew_interval}s is invalid, "
                f"it must be less than lease duration seconds {lease_duration_seconds}"
            )
        self.lease_client = lease_client
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_interval = renew_interval
        self.ping_controller = ping_controller
        self.get_server_node = get_server_node
        self.clock = clock if clock is not None else RealClock()
        self.latest_lease: Optional[Lease] = None

    async def run(self) -> None:
        """Renew the lease every renew interval until cancelled."""
        while True:
            await self.sync()
            await asyncio.sleep(self.renew_interval)

    async def sync(self) -> None:
        """Renew the lease once, creating it if needed; failures are logged."""
        try:
            result = await self.ping_controller.get_result()
        except Exception as exc:
            logger.error("Could not get ping status: %s", exc)
            return
        if result.error is not None:
            logger.error("Ping result is not clean, not updating lease: %s", result.error)
            return

        try:
            node = await _resolve(self.get_server_node())
        except Exception as exc:
            logger.error("Could not get server node: %s", exc)
            return
        if node is None:
            logger.error("servernode is null")
            return

        if self.latest_lease is not None:
            # Optimistically update from the last lease we wrote to avoid a GET.
            try:
                await self.retry_update_lease(node, self.new_lease(node, self.latest_lease))
                return
            except Exception as exc:
                logger.info("failed to update lease using latest lease, fallback to ensure lease: %s", exc)

        lease, created = await self.backoff_ensure_lease(node)
        self.latest_lease = lease
        if not created and lease is not None:
            try:
                await self.retry_update_lease(node, lease)
            except Exception as exc:
                logger.error("Will retry after %ss: %s", self.renew_interval, exc)

    async def backoff_ensure_lease(self, node: Node) -> tuple[Optional[Lease], bool]:
        """Ensure the lease exists, retrying with exponential backoff.

        Returns the lease and whether this call created it.
        """
        sleep = INITIAL_BACKOFF
        while True:
            try:
                return await self.ensure_lease(node)
            except Exception as exc:
                sleep = min(2 * sleep, MAX_BACKOFF)
                logger.error("failed to ensure node lease exists, will retry in %ss: %s", sleep, exc)
                await self.clock.sleep(sleep)

    async def ensure_lease(self, node: Node) -> tuple[Optional[Lease], bool]:
        """Fetch the lease, creating it when missing.

        Returns the lease and whether this call created it.
        """
        name = _node_meta(node).get("name", "")
        try:
            lease = await _resolve(self.lease_client.get(name))
        except Exception as exc:
            if not is_not_found(exc):
                logger.error("Unexpected error getting lease: %s", exc)
                raise
            to_create = self.new_lease(node, None)
            if not to_create["metadata"].get("ownerReferences"):
                # A lease must always carry owner references; try again next time.
                return None, False
            lease = await _resolve(self.lease_client.create(to_create))
            logger.debug("Successfully created lease")
            return lease, True
        logger.debug("Successfully recovered existing lease")
        return lease, False

    async def retry_update_lease(self, node: Node, base: Optional[Lease]) -> None:
        """Update the lease, retrying up to MAX_UPDATE_RETRIES times."""
        for attempt in range(MAX_UPDATE_RETRIES):
            try:
                lease = await _resolve(self.lease_client.update(self.new_lease(node, base)))
            except asyncio.TimeoutError as exc:
                raise RuntimeError(
                    f"failed after {MAX_UPDATE_RETRIES} attempts to update node lease: {exc!r}"
                ) from exc
            except Exception as exc:
                logger.error("failed to update node lease: %s", exc)
                if is_conflict(exc):
                    # A newer version exists; fetch it before trying again.
                    base, _ = await self.backoff_ensure_lease(node)
                continue
            logger.debug("Successfully updated lease (retries=%d)", attempt)
            self.latest_lease = lease
            return
        raise RuntimeError(f"failed after {MAX_UPDATE_RETRIES} attempts to update node lease")

    def new_lease(self, node: Node, base: Optional[Lease]) -> Lease:
        """Build a fresh lease for the node, or a renewed copy of ``base``."""
        meta = _node_meta(node)
        name = meta.get("name", "")
        if base is None:
            lease: Lease = {
                "metadata": {"name": name, "namespace": NAMESPACE_NODE_LEASE},
                "spec": {
                    "holderIdentity": name,
                    "leaseDurationSeconds": self.lease_duration_seconds,
                },
            }
        else:
            lease = copy.deepcopy(base)
            lease.setdefault("metadata", {})
            lease.setdefault("spec", {})
        lease["spec"]["renewTime"] = _format_micro_time(self.clock.now())

        # The owner needs the node's UID, which may not be known on the first
        # attempt, so it is set on every renewal until it sticks.
        if not lease["metadata"].get("ownerReferences"):
            lease["metadata"]["ownerReferences"] = [
                {"apiVersion": "v1", "kind": "Node", "name": name, "uid": meta.get("uid", "")}
            ]
        logger.debug("Generated lease: %s", lease)
        return lease