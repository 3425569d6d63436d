# kubenode

`kubenode` provides asyncio building blocks for keeping a virtual node
registered and healthy in a Kubernetes-style cluster. Nodes and leases are
plain dicts in the API server's JSON shape. You supply the clients that talk
to the API server.

It has no dependencies outside the standard library.

## Modules

- **`kubenode.ping`**: `NodePingController(provider, ping_interval, timeout=None)`
  calls `provider.ping()` every `ping_interval` seconds. `provider.ping()` may be
  a plain function or a coroutine function. Only one ping runs at a time: a ping
  that is still running is joined, not started again. `run()` loops until it is
  cancelled. `get_result()` waits for the first ping and then returns the latest
  `PingResult`, which has a `time` and an `error`. A ping that goes past the
  timeout gets an `asyncio.TimeoutError` as its error.
- **`kubenode.lease`**: `LeaseController(lease_client, lease_duration_seconds,
  renew_interval, ping_controller, get_server_node, clock=None)` renews the
  node's lease in the `kube-node-lease` namespace while pings succeed.
  - `sync()` renews the lease once. `run()` calls it every `renew_interval`
    seconds.
  - A missing lease is created. The controller never creates a lease without
    owner references.
  - Failures to ensure the lease are retried with exponential backoff, up to
    7 seconds between tries.
  - An update is tried up to 5 times. On a conflict it refetches the lease
    before the next try.
  - The lease client must provide `get(name)`, `create(lease)` and
    `update(lease)`.
  - `RealClock` is the default clock.
- **`kubenode.node_status`**: `update_node_status(nodes, node)` patches a node's
  status with a three-way strategic merge patch and retries on conflicts.
  - The patch is built from what was last applied, what the provider wants now,
    and what the server holds. The last applied state is kept in the
    annotations `virtual-kubelet.io/last-applied-node-status` and
    `virtual-kubelet.io/last-applied-object-meta`.
  - Because of this, conditions, annotations and labels added by other agents
    are kept.
  - The module also exposes `prepare_three_way_patch`,
    `create_three_way_merge_patch`, `apply_strategic_merge_patch`,
    `simplest_object_metadata`, `update_node_status_heartbeat` and
    `taints_string`.
  - The node client must provide `get(name)` and
    `patch(name, patch, subresource)`.
- **`kubenode.errors`**: `ApiError`, `NotFoundError` and `ConflictError`, which
  your clients raise. Also `is_not_found(err)` and `is_conflict(err)`, which
  follow `__cause__` chains, and `NodeNotReadyError`.
- **`kubenode.stats`**: dataclasses for the `/stats/summary` document
  (`Summary`, `NodeStats`, `PodStats`, `ContainerStats`, `CPUStats`,
  `MemoryStats`, `FsStats`, `NetworkStats` and others).
  `Summary.to_dict()` and `Summary.to_json()` produce the wire format, with its
  field names, omitted empty fields and inlined structures.

Client methods may return values or awaitables.

## Example

```python
import asyncio

from kubenode.lease import LeaseController
from kubenode.node_status import update_node_status
from kubenode.ping import NodePingController


class Provider:
    async def ping(self):
        pass  # raise to report the node unhealthy


async def main(nodes, leases):
    node = {"metadata": {"name": "virtual-node-0"}, "status": {"conditions": []}}
    pinger = NodePingController(Provider(), ping_interval=10)
    ping_task = asyncio.create_task(pinger.run())

    stored = await update_node_status(nodes, node)
    lessor = LeaseController(leases, 40, 10, pinger, lambda: stored)
    await lessor.sync()

    ping_task.cancel()
```

## Stats summary

```python
from kubenode.stats import NodeStats, Summary

print(Summary(node=NodeStats(node_name="virtual-node-0")).to_json())
# {"node":{"nodeName":"virtual-node-0","startTime":null},"pods":[]}
```

## What this package does not do

- It does not register a node, and it does not run the ping, lease and status
  loops together as one controller. You start and combine them yourself.
- It contains no API server client and no HTTP server. There are no endpoints
  for container logs, exec, running pods or stats; `kubenode.stats` only
  defines the summary document.

## Running the tests

```
pip install -e ".[test]"
pytest
```