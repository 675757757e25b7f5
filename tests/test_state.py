import asyncio

from particle_bridge.cloud import TransportError
from particle_bridge.devices import (
    GarageDoorProfile, LockProfile, CurrentDoorState, TargetDoorState, LockCurrentState, LockTargetState,
)
from particle_bridge.state import DeviceStateReconciler, Phase


def make_garage(poll_values=None, poll_error=None, **kwargs):
    """Garage reconciler with a scripted poll; returns (reconciler, updates)."""
    updates = []

    async def poll():
        if poll_error:
            raise poll_error
        return poll_values.pop(0) if len(poll_values) > 1 else poll_values[0]

    options = dict(debounce_seconds=0.05, transit_seconds=0.1)
    options.update(kwargs)
    reconciler = DeviceStateReconciler(
        'Garage', GarageDoorProfile(),
        poll=poll if (poll_values or poll_error) else None,
        on_update=lambda c, v: updates.append((c, v)),
        **options
    )
    return reconciler, updates


def test_open_command_passes_through_opening_to_open():
    async def scenario():
        r, updates = make_garage([CurrentDoorState.OPEN])
        r.poll_completed(CurrentDoorState.CLOSED)
        await r.drain()

        generation = await r.begin_command(TargetDoorState.OPEN)
        assert r.phase is Phase.COMMAND_PENDING
        assert r.observed == CurrentDoorState.OPENING
        assert r.motion

        r.command_finished(generation)
        await r.drain()
        assert r.phase is Phase.TRANSITIONING

        await asyncio.sleep(0.2)
        await r.drain()
        assert r.phase is Phase.IDLE
        assert r.observed == CurrentDoorState.OPEN
        assert r.target == TargetDoorState.OPEN
        await r.stop()
        return updates

    updates = asyncio.run(scenario())
    assert updates == [
        ('CurrentDoorState', CurrentDoorState.CLOSED),
        ('TargetDoorState', TargetDoorState.CLOSED),
        ('CurrentDoorState', CurrentDoorState.OPENING),
        ('TargetDoorState', TargetDoorState.OPEN),
        ('CurrentDoorState', CurrentDoorState.OPEN),
    ]


def test_invoke_failure_restores_last_known_state():
    async def scenario():
        r, updates = make_garage([CurrentDoorState.CLOSED])
        r.poll_completed(CurrentDoorState.CLOSED)
        generation = await r.begin_command(TargetDoorState.OPEN)
        r.command_finished(generation, TransportError("Timeout after 7.0s"))
        await r.drain()
        await r.stop()
        return r, updates

    r, updates = asyncio.run(scenario())
    assert r.phase is Phase.IDLE
    assert r.observed == CurrentDoorState.CLOSED
    # Requested value is kept unless rollback is configured
    assert r.target == TargetDoorState.OPEN
    assert updates[-1] == ('CurrentDoorState', CurrentDoorState.CLOSED)


def test_invoke_failure_with_rollback_resets_target():
    async def scenario():
        r, _ = make_garage([CurrentDoorState.CLOSED], rollback_on_failure=True)
        r.poll_completed(CurrentDoorState.CLOSED)
        generation = await r.begin_command(TargetDoorState.OPEN)
        r.command_finished(generation, TransportError("HTTP 500", status=500))
        await r.drain()
        await r.stop()
        return r

    r = asyncio.run(scenario())
    assert r.observed == CurrentDoorState.CLOSED
    assert r.target == TargetDoorState.CLOSED


def test_event_during_motion_is_delayed_by_debounce():
    async def scenario():
        r, _ = make_garage([CurrentDoorState.CLOSED], transit_seconds=5)
        generation = await r.begin_command(TargetDoorState.OPEN)
        r.command_finished(generation)
        r.event_received("door-opened")
        await r.drain()
        assert r.events_delayed == 1
        assert r.observed == CurrentDoorState.OPENING

        await asyncio.sleep(0.1)
        await r.drain()
        observed, phase = r.observed, r.phase
        await r.stop()
        return observed, phase, r.events_applied

    observed, phase, applied = asyncio.run(scenario())
    assert observed == CurrentDoorState.OPEN
    assert phase is Phase.IDLE
    assert applied == 1


def test_event_while_idle_applies_immediately():
    async def scenario():
        r, updates = make_garage()
        r.event_received("door-opened")
        r.event_received("door-stuck")
        await r.drain()
        await r.stop()
        return r, updates

    r, updates = asyncio.run(scenario())
    assert r.observed == CurrentDoorState.OPEN
    assert r.target == TargetDoorState.OPEN
    assert r.events_applied == 1
    assert r.synced


def test_poll_during_command_is_not_applied():
    async def scenario():
        r, _ = make_garage([CurrentDoorState.CLOSED], transit_seconds=5)
        await r.begin_command(TargetDoorState.OPEN)
        r.poll_completed(CurrentDoorState.CLOSED)
        await r.drain()
        await r.stop()
        return r

    r = asyncio.run(scenario())
    assert r.observed == CurrentDoorState.OPENING
    assert r.phase is Phase.COMMAND_PENDING


def test_result_of_superseded_command_is_discarded():
    async def scenario():
        r, _ = make_garage([CurrentDoorState.CLOSED], transit_seconds=5)
        first = await r.begin_command(TargetDoorState.OPEN)
        second = await r.begin_command(TargetDoorState.CLOSED)
        r.command_finished(first)
        await r.drain()
        await r.stop()
        return r, first, second

    r, first, second = asyncio.run(scenario())
    assert second == first + 1
    assert r.stale_discarded == 1
    assert r.phase is Phase.COMMAND_PENDING
    assert r.observed == CurrentDoorState.CLOSING
    assert r.target == TargetDoorState.CLOSED


def test_stale_confirmation_poll_is_discarded():
    async def scenario():
        r, _ = make_garage([CurrentDoorState.OPEN], transit_seconds=5)
        first = await r.begin_command(TargetDoorState.OPEN)
        r.command_finished(first)
        await r.drain()
        await r.begin_command(TargetDoorState.CLOSED)
        # Late confirmation of the first command
        r.poll_completed(CurrentDoorState.OPEN, generation=first)
        await r.drain()
        await r.stop()
        return r

    r = asyncio.run(scenario())
    assert r.stale_discarded == 1
    assert r.observed == CurrentDoorState.CLOSING


def test_failed_confirmation_poll_returns_to_idle():
    async def scenario():
        r, _ = make_garage(poll_error=TransportError("Timeout"))
        generation = await r.begin_command(TargetDoorState.CLOSED)
        r.command_finished(generation)
        await asyncio.sleep(0.2)
        await r.drain()
        await r.stop()
        return r

    r = asyncio.run(scenario())
    assert r.phase is Phase.IDLE
    assert r.target == TargetDoorState.CLOSED


def test_updates_are_emitted_only_on_change():
    async def scenario():
        r, updates = make_garage([CurrentDoorState.CLOSED])
        for _ in range(3):
            r.poll_completed(CurrentDoorState.CLOSED)
        r.event_received("door-closed")
        await r.drain()
        await r.stop()
        return updates

    updates = asyncio.run(scenario())
    assert updates == [
        ('CurrentDoorState', CurrentDoorState.CLOSED),
        ('TargetDoorState', TargetDoorState.CLOSED),
    ]


def test_command_without_poll_source_settles_on_acceptance():
    async def scenario():
        updates = []
        r = DeviceStateReconciler('Lock', LockProfile(), on_update=lambda c, v: updates.append((c, v)))
        assert r.target == LockTargetState.UNSECURED
        generation = await r.begin_command(LockTargetState.SECURED)
        r.command_finished(generation)
        await r.drain()
        await r.stop()
        return r, updates

    r, updates = asyncio.run(scenario())
    assert r.phase is Phase.IDLE
    assert r.observed == LockCurrentState.SECURED
    assert ('LockCurrentState', LockCurrentState.SECURED) in updates


def test_snapshot():
    r, _ = make_garage()
    snapshot = r.snapshot()
    assert snapshot['phase'] == 'idle'
    assert snapshot['generation'] == 0
    assert snapshot['synced'] is False


def test_repeated_event_is_idempotent():
    async def scenario():
        r, updates = make_garage()
        r.event_received("door-opened")
        await r.drain()
        once = (r.observed, r.target)
        r.event_received("door-closed")
        r.event_received("door-closed")
        await r.drain()
        twice = (r.observed, r.target)
        await r.stop()
        return once, twice, updates

    once, twice, updates = asyncio.run(scenario())
    assert once == (CurrentDoorState.OPEN, TargetDoorState.OPEN)
    assert twice == (CurrentDoorState.CLOSED, TargetDoorState.CLOSED)
    assert updates == [
        ('CurrentDoorState', CurrentDoorState.OPEN),
        ('TargetDoorState', TargetDoorState.OPEN),
        ('CurrentDoorState', CurrentDoorState.CLOSED),
        ('TargetDoorState', TargetDoorState.CLOSED),
    ]


def test_unexpected_confirmation_poll_error_returns_to_idle():
    async def scenario():
        error = UnicodeDecodeError('utf-8', b'\xff', 0, 1, 'invalid start byte')
        r, _ = make_garage(poll_error=error)
        generation = await r.begin_command(TargetDoorState.OPEN)
        r.command_finished(generation)
        await asyncio.sleep(0.2)
        await r.drain()
        await r.stop()
        return r

    r = asyncio.run(scenario())
    assert r.phase is Phase.IDLE
    assert not r.motion


def test_cancelled_command_start_is_closed():
    async def scenario():
        r, _ = make_garage([CurrentDoorState.CLOSED], transit_seconds=5)
        r.poll_completed(CurrentDoorState.CLOSED)
        await r.drain()

        caller = asyncio.create_task(r.begin_command(TargetDoorState.OPEN))
        await asyncio.sleep(0)
        caller.cancel()
        try:
            await caller
        except asyncio.CancelledError:
            pass
        await asyncio.sleep(0.01)
        await r.drain()
        await r.stop()
        return r

    r = asyncio.run(scenario())
    assert r.generation == 1
    assert r.phase is Phase.IDLE
    assert not r.motion
    assert r.observed == CurrentDoorState.CLOSED
