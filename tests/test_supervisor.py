import asyncio
from dataclasses import replace

import pytest

from turtlecoind_ha.local.errors import FatalConfigError, HealthCheckFailure, ProcessTermination, TransientStartupError
from turtlecoind_ha.local.supervisor import HealthSnapshot, LifecycleState, NodeSupervisor, SignalKind
from turtlecoind_ha.local.supervisor.sanitation import db_lock_path

from conftest import STARTED_LINE, SYNC_LINE, bring_to_monitoring

pytestmark = pytest.mark.asyncio


def make_lock(config):
    lock = db_lock_path(config)
    lock.parent.mkdir(parents=True, exist_ok=True)
    lock.write_text("")
    return lock


class TestStart:
    async def test_start_spawns_and_announces_arguments(self, supervisor, spawned, recorder):
        assert supervisor.start()

        assert len(spawned) == 1
        assert supervisor.state is LifecycleState.STARTING
        assert supervisor.is_running
        assert supervisor.pid == 4242
        start = recorder.of(SignalKind.START)[0]
        assert start.payload.startswith("--data-dir ")
        assert spawned[0].command[0] == str(supervisor.config.path)

    async def test_second_start_is_refused(self, supervisor, spawned):
        assert supervisor.start()
        assert not supervisor.start()
        assert len(spawned) == 1

    async def test_missing_binary_is_fatal(self, make_supervisor, node_config, tmp_path, spawned, recorder):
        supervisor = make_supervisor(replace(node_config, path=tmp_path / "missing"))

        assert not supervisor.start()

        assert spawned == []
        assert supervisor.state is LifecycleState.STOPPED
        errors = recorder.of(SignalKind.ERROR)
        assert len(errors) == 1
        assert isinstance(errors[0].payload, FatalConfigError)

    async def test_spawn_failure_is_reported(self, node_config, rpc, recorder):
        def spawn(command, handlers):
            raise PermissionError("not executable")

        supervisor = NodeSupervisor(node_config, rpc=rpc, spawn=spawn)
        supervisor.signals.subscribe_all(recorder)

        assert not supervisor.start()
        assert supervisor.state is LifecycleState.STOPPED
        assert not supervisor.is_running
        assert isinstance(recorder.of(SignalKind.ERROR)[0].payload, FatalConfigError)

    async def test_stale_lock_is_cleared_and_start_retried(self, supervisor, node_config, spawned, recorder):
        lock = make_lock(node_config)

        assert not supervisor.start()
        assert not lock.exists()
        assert spawned == []
        assert len(recorder.of(SignalKind.INFO)) == 1

        await recorder.wait_for(SignalKind.START)
        assert len(spawned) == 1

    async def test_stale_lock_kept_when_auto_clear_disabled(self, make_supervisor, node_config, spawned, recorder):
        supervisor = make_supervisor(replace(node_config, clear_db_lock=False))
        lock = make_lock(node_config)

        assert not supervisor.start()
        assert lock.exists()
        assert isinstance(recorder.of(SignalKind.ERROR)[0].payload, TransientStartupError)

        await supervisor.stop()
        await asyncio.sleep(node_config.stale_lock_retry_delay * 2)
        assert spawned == []

    async def test_repeated_start_leaves_no_retry_behind_stop(self, make_supervisor, node_config, spawned):
        supervisor = make_supervisor(replace(node_config, clear_db_lock=False))
        lock = make_lock(node_config)

        assert not supervisor.start()
        assert not supervisor.start()
        await supervisor.stop()
        lock.unlink()

        await asyncio.sleep(node_config.stale_lock_retry_delay * 3)
        assert spawned == []
        assert not supervisor.is_running


class TestConsoleOutput:
    async def test_lines_are_published_as_data(self, supervisor, spawned, recorder):
        supervisor.start()
        spawned[0].emit("Block 17 added to main chain")
        assert recorder.of(SignalKind.DATA)[0].payload == "Block 17 added to main chain"

    async def test_started_marker_only_while_starting(self, supervisor, spawned, recorder):
        process = await bring_to_monitoring(supervisor, spawned, recorder)
        process.emit(STARTED_LINE)
        assert recorder.of(SignalKind.STARTED) == []

    async def test_started_marker(self, supervisor, spawned, recorder):
        supervisor.start()
        spawned[0].emit(STARTED_LINE)
        assert len(recorder.of(SignalKind.STARTED)) == 1
        assert supervisor.state is LifecycleState.STARTING


class TestSyncCorroboration:
    async def test_matching_heights_confirm_sync(self, supervisor, spawned, recorder):
        await bring_to_monitoring(supervisor, spawned, recorder)

        assert supervisor.monitor.armed
        assert supervisor.state is LifecycleState.MONITORING
        assert recorder.kinds().index(SignalKind.SYNCED) < recorder.kinds().index(SignalKind.READY)
        snapshot = recorder.of(SignalKind.READY)[0].payload
        assert isinstance(snapshot, HealthSnapshot)
        assert snapshot.hash_rate == 100

    async def test_height_mismatch_returns_to_starting(self, supervisor, spawned, recorder, rpc):
        rpc.info["network_height"] = 250
        supervisor.start()
        spawned[0].emit(SYNC_LINE)
        assert supervisor.state is LifecycleState.WAITING_FOR_SYNC_CONFIRMATION

        await asyncio.sleep(0.05)
        assert supervisor.state in (LifecycleState.STARTING, LifecycleState.WAITING_FOR_SYNC_CONFIRMATION)
        assert recorder.of(SignalKind.SYNCED) == []
        assert not supervisor.monitor.armed

    async def test_corroboration_retries_until_heights_match(self, supervisor, spawned, recorder, rpc):
        rpc.info["network_height"] = 101
        supervisor.start()
        spawned[0].emit(SYNC_LINE)

        await asyncio.sleep(supervisor.config.polling_interval * 5)
        assert recorder.of(SignalKind.SYNCED) == []
        queries = rpc.calls
        assert queries >= 2

        rpc.info["network_height"] = 100
        await recorder.wait_for(SignalKind.SYNCED)
        assert len(recorder.of(SignalKind.DATA)) == 1
        assert supervisor.monitor.armed

    async def test_stop_cancels_pending_corroboration(self, supervisor, spawned, recorder, rpc):
        rpc.info["network_height"] = 101
        supervisor.start()
        spawned[0].emit(SYNC_LINE)
        await asyncio.sleep(supervisor.config.polling_interval * 2)

        await supervisor.stop()
        queries = rpc.calls
        await asyncio.sleep(supervisor.config.polling_interval * 5)
        assert rpc.calls == queries

    async def test_unreachable_rpc_returns_to_starting(self, supervisor, spawned, recorder, rpc):
        rpc.failure = "connection refused"
        supervisor.start()
        spawned[0].emit(SYNC_LINE)

        await asyncio.sleep(0.05)
        assert supervisor.state in (LifecycleState.STARTING, LifecycleState.WAITING_FOR_SYNC_CONFIRMATION)
        assert recorder.of(SignalKind.SYNCED) == []

    async def test_repeated_sync_claims_are_ignored(self, supervisor, spawned, recorder):
        process = await bring_to_monitoring(supervisor, spawned, recorder)
        process.emit(SYNC_LINE)
        await asyncio.sleep(0.05)
        assert len(recorder.of(SignalKind.SYNCED)) == 1


class TestHealthMonitoring:
    async def test_probe_sends_help(self, supervisor, spawned, recorder):
        process = await bring_to_monitoring(supervisor, spawned, recorder)
        assert "help" in process.written

    async def test_desync_is_reported_without_down(self, supervisor, spawned, recorder, rpc):
        await bring_to_monitoring(supervisor, spawned, recorder)
        rpc.info["network_height"] = 110

        desync = (await recorder.wait_for(SignalKind.DESYNC))[0].payload
        assert desync.deviance == 10
        assert supervisor.state is LifecycleState.DESYNCED

        await asyncio.sleep(supervisor.config.down_window * 2)
        assert recorder.of(SignalKind.DOWN) == []

        rpc.info["network_height"] = 100
        ready = len(recorder.of(SignalKind.READY))
        await recorder.wait_for(SignalKind.READY, count=ready + 1)
        assert supervisor.state is LifecycleState.MONITORING

    async def test_persistent_failure_declares_down_once(self, supervisor, spawned, recorder, rpc):
        await bring_to_monitoring(supervisor, spawned, recorder)
        rpc.failure = "connection refused"

        await recorder.wait_for(SignalKind.DOWN)
        failures = [s.payload for s in recorder.of(SignalKind.ERROR)]
        assert all(isinstance(f, HealthCheckFailure) for f in failures)
        assert failures

        await asyncio.sleep(supervisor.config.down_window * 3)
        assert len(recorder.of(SignalKind.DOWN)) == 1
        assert supervisor.is_running

    async def test_down_is_not_declared_before_the_window(self, make_supervisor, node_config, spawned, recorder, rpc):
        supervisor = make_supervisor(replace(node_config, max_polling_failures=10))
        window = supervisor.config.down_window
        await bring_to_monitoring(supervisor, spawned, recorder)
        loop = asyncio.get_running_loop()

        rpc.failure = "connection refused"
        await recorder.wait_for(SignalKind.ERROR)
        timer = supervisor.debouncer.state.pending_down_timer
        assert timer is not None
        armed_at = timer.when() - window

        await asyncio.sleep(max(0.0, armed_at + window * 0.8 - loop.time()))
        assert recorder.of(SignalKind.DOWN) == []

        await recorder.wait_for(SignalKind.DOWN)
        assert loop.time() >= armed_at + window - 0.01
        await asyncio.sleep(window)
        assert len(recorder.of(SignalKind.DOWN)) == 1

    async def test_transient_failure_recovers_without_down(self, make_supervisor, node_config, spawned, recorder, rpc):
        supervisor = make_supervisor(replace(node_config, max_polling_failures=25))
        await bring_to_monitoring(supervisor, spawned, recorder)

        rpc.failure = "timeout"
        await recorder.wait_for(SignalKind.ERROR)
        assert supervisor.debouncer.armed
        rpc.failure = None

        ready = len(recorder.of(SignalKind.READY))
        await recorder.wait_for(SignalKind.READY, count=ready + 1)
        assert not supervisor.debouncer.armed
        await asyncio.sleep(supervisor.config.down_window)
        assert recorder.of(SignalKind.DOWN) == []

    async def test_unanswered_probe_is_a_failure(self, supervisor, spawned, recorder):
        process = await bring_to_monitoring(supervisor, spawned, recorder)
        process.echo_help = False

        await recorder.wait_for(SignalKind.ERROR, timeout=3.0)
        assert "unresponsive" in str(recorder.of(SignalKind.ERROR)[0].payload)

    async def test_broken_console_declares_down(self, supervisor, spawned, recorder):
        process = await bring_to_monitoring(supervisor, spawned, recorder)
        process.broken = True

        await recorder.wait_for(SignalKind.DOWN)
        assert any(isinstance(s.payload, ProcessTermination) for s in recorder.of(SignalKind.ERROR))
        assert not supervisor.monitor.armed
        assert supervisor.is_running

        await supervisor.stop()
        assert len(recorder.of(SignalKind.DOWN)) == 1


class TestStop:
    async def test_stop_sends_exit_and_reports_exit_code(self, supervisor, spawned, recorder):
        process = await bring_to_monitoring(supervisor, spawned, recorder)

        assert await supervisor.stop() == 0

        assert process.written[-1] == "exit"
        assert process.closed
        assert not process.killed
        assert supervisor.state is LifecycleState.STOPPED
        assert not supervisor.is_running
        assert not supervisor.monitor.armed
        assert recorder.of(SignalKind.STOPPED)[0].payload == 0

    async def test_stubborn_process_is_killed(self, supervisor, spawned, recorder):
        supervisor.start()
        spawned[0].exit_on_command = False

        assert await supervisor.stop() == -9
        assert spawned[0].killed
        assert recorder.of(SignalKind.STOPPED)[0].payload == -9

    async def test_stop_when_not_running(self, supervisor, recorder):
        assert await supervisor.stop() is None
        assert recorder.of(SignalKind.STOPPED) == []

    async def test_stop_cancels_pending_down(self, supervisor, spawned, recorder, rpc):
        await bring_to_monitoring(supervisor, spawned, recorder)
        rpc.failure = "connection refused"
        await recorder.wait_for(SignalKind.ERROR)

        await supervisor.stop()
        await asyncio.sleep(supervisor.config.down_window * 2)
        assert recorder.of(SignalKind.DOWN) == []

    async def test_output_of_previous_run_is_ignored(self, supervisor, spawned, recorder):
        supervisor.start()
        old = spawned[0]
        await supervisor.stop()
        supervisor.start()

        old.emit("late line from the old process")
        old.handlers.on_exit(0)

        assert recorder.of(SignalKind.DATA) == []
        assert supervisor.is_running
        assert len(recorder.of(SignalKind.STOPPED)) == 1

    async def test_restart_after_stop(self, supervisor, spawned, recorder):
        await bring_to_monitoring(supervisor, spawned, recorder)
        await supervisor.stop()

        assert supervisor.start()
        assert supervisor.state is LifecycleState.STARTING
        assert not supervisor.debouncer.state.has_seen_first_success


class TestUnexpectedExit:
    async def test_exit_emits_down_then_stopped(self, supervisor, spawned, recorder):
        process = await bring_to_monitoring(supervisor, spawned, recorder)

        process.handlers.on_exit(1)

        kinds = [k for k in recorder.kinds() if k in (SignalKind.DOWN, SignalKind.STOPPED)]
        assert kinds == [SignalKind.DOWN, SignalKind.STOPPED]
        assert recorder.of(SignalKind.STOPPED)[0].payload == 1
        assert supervisor.state is LifecycleState.STOPPED
        assert not supervisor.is_running
        assert not supervisor.monitor.armed

    async def test_exit_during_startup(self, supervisor, spawned, recorder):
        supervisor.start()
        spawned[0].handlers.on_exit(2)

        assert recorder.of(SignalKind.STOPPED)[0].payload == 2
        assert supervisor.start()
        assert len(spawned) == 2
