from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import VIN, FakeProvider
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure, ServerSelectionTimeoutError

from fleetstate.config import FleetConfig, RetryPolicy
from fleetstate.exceptions import StoreError, StoreUnavailable
from fleetstate.models.state import CanonicalVehicleState, DerivedState
from fleetstate.monitor import FleetMonitor
from fleetstate.store.memory import InMemorySignalStore
from fleetstate.store.retry import ErrorCategory, classify_error, run_with_retry

POLICY = RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=30.0, jitter=0.0)


class _Flaky:
    def __init__(self, *errors: Exception, result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0
        self.reconnects = 0
        self.sleeps: list[float] = []

    async def operation(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result

    async def reconnect(self) -> None:
        self.reconnects += 1

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)


def test_classify_error() -> None:
    assert classify_error(AutoReconnect("reset")) is ErrorCategory.NETWORK
    assert classify_error(ServerSelectionTimeoutError("no primary")) is ErrorCategory.NETWORK
    assert classify_error(OperationFailure("auth failed", code=18)) is ErrorCategory.AUTH
    assert classify_error(OperationFailure("stepdown", code=11602)) is ErrorCategory.SERVER
    assert classify_error(DuplicateKeyError("dup", code=11000)) is ErrorCategory.CLIENT
    assert classify_error(ValueError("bad filter")) is ErrorCategory.CLIENT


@pytest.mark.asyncio
async def test_network_errors_reconnect_and_retry() -> None:
    flaky = _Flaky(AutoReconnect("reset"), AutoReconnect("reset"))

    result = await run_with_retry(
        flaky.operation, name="save_state", policy=POLICY, reconnect=flaky.reconnect, sleep=flaky.sleep
    )

    assert result == "ok"
    assert flaky.calls == 3
    assert flaky.reconnects == 2
    assert flaky.sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_server_errors_retry_without_reconnect() -> None:
    flaky = _Flaky(OperationFailure("interrupted", code=11602))

    await run_with_retry(
        flaky.operation, name="insert_signal", policy=POLICY, reconnect=flaky.reconnect, sleep=flaky.sleep
    )

    assert flaky.calls == 2
    assert flaky.reconnects == 0


@pytest.mark.asyncio
async def test_client_errors_raise_immediately() -> None:
    flaky = _Flaky(DuplicateKeyError("dup", code=11000))

    with pytest.raises(StoreError) as exc_info:
        await run_with_retry(
            flaky.operation, name="insert_trip", policy=POLICY, vehicle_id="VIN1", sleep=flaky.sleep
        )

    assert flaky.calls == 1
    assert flaky.sleeps == []
    assert not isinstance(exc_info.value, StoreUnavailable)
    assert exc_info.value.operation == "insert_trip"
    assert exc_info.value.vehicle_id == "VIN1"
    assert isinstance(exc_info.value.__cause__, DuplicateKeyError)


@pytest.mark.asyncio
async def test_exhausted_retries_raise_store_unavailable() -> None:
    flaky = _Flaky(*(ServerSelectionTimeoutError("down") for _ in range(5)))

    with pytest.raises(StoreUnavailable) as exc_info:
        await run_with_retry(
            flaky.operation, name="get_state", policy=POLICY, vehicle_id="VIN1", sleep=flaky.sleep
        )

    assert flaky.calls == 3
    assert exc_info.value.operation == "get_state"
    assert exc_info.value.vehicle_id == "VIN1"
    assert isinstance(exc_info.value.__cause__, ServerSelectionTimeoutError)


def test_retry_policy_delay_is_capped() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.5)

    assert policy.delay_for(1, rand=0.5) == pytest.approx(1.0)
    assert policy.delay_for(10, rand=0.5) == pytest.approx(5.0)
    assert policy.delay_for(10, rand=0.0) == pytest.approx(2.5)


class _RejectingStateStore(InMemorySignalStore):
    """Rejects every state write with a non-retryable server error."""

    async def save_state(self, state: CanonicalVehicleState) -> None:
        async def _save() -> None:
            raise OperationFailure("bad value", code=2)

        await run_with_retry(_save, name="save_state", policy=POLICY, vehicle_id=state.vehicle_id)


@pytest.mark.asyncio
async def test_rejected_write_does_not_stop_signal_processing(make_signal, t0) -> None:
    store = _RejectingStateStore()
    config = FleetConfig(vehicle_ids=(VIN,), parking_grace_seconds=0)

    async with FleetMonitor(config, store=store, provider=FakeProvider()) as monitor:
        derivation = await monitor.process_signal(make_signal(at=t0, ignition="On"))
        later = await monitor.process_signal(make_signal(at=t0 + timedelta(seconds=30), ignition="On"))

    assert derivation.state.state is DerivedState.TRIP
    assert later.state.state_since == t0
    assert (await store.get_state(VIN)) is None
    (trip,) = store.all_trips(VIN)
    assert trip.is_active
    assert monitor.arena.get(VIN).last_update == t0 + timedelta(seconds=30)
