import asyncio
import copy
from datetime import datetime, timedelta, timezone

import pytest

from kubenode.errors import ApiError, ConflictError, NotFoundError
from kubenode.lease import (
    MAX_BACKOFF,
    MAX_UPDATE_RETRIES,
    NAMESPACE_NODE_LEASE,
    LeaseController,
    RealClock,
)
from kubenode.ping import PingResult

NODE = {"metadata": {"name": "node-a", "uid": "uid-node-a"}}


class FakeClock:
    def __init__(self):
        self.current = datetime(2020, 3, 20, 21, 7, 34, tzinfo=timezone.utc)
        self.sleeps = []

    def now(self):
        value = self.current
        self.current += timedelta(seconds=1)
        return value

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


class FakeLeases:
    def __init__(self):
        self.store = {}
        self.get_errors = []
        self.update_errors = []
        self.updates = 0
        self.creates = 0

    async def get(self, name):
        if self.get_errors:
            raise self.get_errors.pop(0)
        if name not in self.store:
            raise NotFoundError(f"lease {name} not found")
        return copy.deepcopy(self.store[name])

    async def create(self, lease):
        self.creates += 1
        name = lease["metadata"]["name"]
        if name in self.store:
            raise ApiError("exists", code=409, reason="AlreadyExists")
        self.store[name] = copy.deepcopy(lease)
        return copy.deepcopy(lease)

    async def update(self, lease):
        self.updates += 1
        if self.update_errors:
            raise self.update_errors.pop(0)
        name = lease["metadata"]["name"]
        if name not in self.store:
            raise NotFoundError(f"lease {name} not found")
        self.store[name] = copy.deepcopy(lease)
        return copy.deepcopy(lease)


class FakePing:
    def __init__(self, result):
        self.result = result

    async def get_result(self):
        return self.result


def make_controller(client=None, ping_error=None, get_node=None, interval=10.0):
    return LeaseController(
        client if client is not None else FakeLeases(),
        40,
        interval,
        FakePing(PingResult(time=datetime.now(timezone.utc), error=ping_error)),
        get_node if get_node is not None else (lambda: copy.deepcopy(NODE)),
        clock=FakeClock(),
    )


@pytest.mark.parametrize(
    "duration, interval, message",
    [(0, 10.0, "duration"), (-1, 10.0, "duration"), (40, 0, "must be > 0"), (40, 40.0, "less than")],
)
def test_invalid_configuration(duration, interval, message):
    with pytest.raises(ValueError, match=message):
        LeaseController(FakeLeases(), duration, interval, FakePing(PingResult()), lambda: NODE)


def test_new_lease_from_scratch():
    controller = make_controller()
    lease = controller.new_lease(NODE, None)
    assert lease["metadata"]["name"] == "node-a"
    assert lease["metadata"]["namespace"] == NAMESPACE_NODE_LEASE == "kube-node-lease"
    assert lease["spec"]["holderIdentity"] == "node-a"
    assert lease["spec"]["leaseDurationSeconds"] == 40
    assert lease["spec"]["renewTime"] == "2020-03-20T21:07:34.000000Z"
    assert lease["metadata"]["ownerReferences"] == [
        {"apiVersion": "v1", "kind": "Node", "name": "node-a", "uid": "uid-node-a"}
    ]


def test_new_lease_copies_base():
    controller = make_controller()
    base = controller.new_lease(NODE, None)
    base["metadata"]["ownerReferences"] = [{"apiVersion": "v1", "kind": "Node", "name": "other", "uid": "u"}]
    snapshot = copy.deepcopy(base)
    renewed = controller.new_lease(NODE, base)
    assert base == snapshot
    assert renewed["metadata"]["ownerReferences"] == snapshot["metadata"]["ownerReferences"]
    assert renewed["spec"]["renewTime"] > base["spec"]["renewTime"]


@pytest.mark.asyncio
async def test_ensure_lease_creates_then_recovers():
    client = FakeLeases()
    controller = make_controller(client)
    lease, created = await controller.ensure_lease(NODE)
    assert created is True
    assert client.store["node-a"] == lease
    again, created_again = await controller.ensure_lease(NODE)
    assert created_again is False
    assert again == lease
    assert client.creates == 1


@pytest.mark.asyncio
async def test_ensure_lease_propagates_unexpected_error():
    client = FakeLeases()
    client.get_errors = [ApiError("server down")]
    controller = make_controller(client)
    with pytest.raises(ApiError, match="server down"):
        await controller.ensure_lease(NODE)


@pytest.mark.asyncio
async def test_backoff_grows_and_is_capped():
    client = FakeLeases()
    client.get_errors = [ApiError("fail") for _ in range(10)]
    controller = make_controller(client)
    lease, created = await controller.backoff_ensure_lease(NODE)
    assert created is True
    assert lease["metadata"]["name"] == "node-a"
    sleeps = controller.clock.sleeps
    assert len(sleeps) == 10
    assert sleeps == sorted(sleeps)
    assert max(sleeps) == MAX_BACKOFF
    assert sleeps[0] < sleeps[1]


@pytest.mark.asyncio
async def test_retry_update_recovers_from_conflict():
    client = FakeLeases()
    controller = make_controller(client)
    lease, _ = await controller.ensure_lease(NODE)
    client.update_errors = [ConflictError("stale")]
    await controller.retry_update_lease(NODE, lease)
    assert client.updates == 2
    assert controller.latest_lease == client.store["node-a"]


@pytest.mark.asyncio
async def test_retry_update_gives_up():
    client = FakeLeases()
    controller = make_controller(client)
    lease, _ = await controller.ensure_lease(NODE)
    client.update_errors = [ApiError("fail") for _ in range(MAX_UPDATE_RETRIES)]
    with pytest.raises(RuntimeError, match="failed after 5 attempts"):
        await controller.retry_update_lease(NODE, lease)
    assert client.updates == MAX_UPDATE_RETRIES


@pytest.mark.asyncio
async def test_sync_skips_when_ping_failed():
    client = FakeLeases()
    controller = make_controller(client, ping_error=RuntimeError("unhealthy"))
    await controller.sync()
    assert client.store == {}
    assert controller.latest_lease is None


@pytest.mark.asyncio
async def test_sync_skips_without_server_node():
    def missing():
        raise LookupError("Server node does not yet exist")

    client = FakeLeases()
    controller = make_controller(client, get_node=missing)
    await controller.sync()
    assert client.store == {}


@pytest.mark.asyncio
async def test_sync_creates_then_renews():
    client = FakeLeases()
    controller = make_controller(client)
    await controller.sync()
    first = copy.deepcopy(client.store["node-a"])
    assert client.updates == 0
    assert controller.latest_lease == first

    await controller.sync()
    second = client.store["node-a"]
    assert client.updates == 1
    assert second["spec"]["renewTime"] > first["spec"]["renewTime"]
    assert second["spec"]["holderIdentity"] == "node-a"


@pytest.mark.asyncio
async def test_sync_updates_existing_lease():
    client = FakeLeases()
    controller = make_controller(client)
    existing = controller.new_lease(NODE, None)
    client.store["node-a"] = copy.deepcopy(existing)
    await controller.sync()
    assert client.creates == 0
    assert client.updates == 1
    assert client.store["node-a"]["spec"]["renewTime"] > existing["spec"]["renewTime"]


@pytest.mark.asyncio
async def test_run_keeps_renewing():
    client = FakeLeases()
    controller = make_controller(client, interval=0.01)
    task = asyncio.create_task(controller.run())
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert client.creates == 1
    assert client.updates >= 1
    assert client.store["node-a"]["spec"]["holderIdentity"] == "node-a"


@pytest.mark.asyncio
async def test_real_clock():
    clock = RealClock()
    before = clock.now()
    await clock.sleep(0.01)
    after = clock.now()
    assert after > before
    assert before.tzinfo is not None