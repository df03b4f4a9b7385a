"""Worker bridge tests against real worker processes."""
import asyncio
import sys
import time

from quarry_runner.worker_bridge import MAX_SECURITY_EVENTS, WorkerBridge

# Minimal stand-in worker: echoes code back, exits when asked to run "crash"
FAKE_WORKER = r'''
import json, sys
print(json.dumps({"type": "ready"}), flush=True)
for line in sys.stdin:
    request = json.loads(line)
    if request["code"] == "crash":
        sys.exit(3)
    print(json.dumps({
        "type": "result",
        "id": request["id"],
        "success": True,
        "logs": [{"type": "log", "message": request["code"]}],
    }), flush=True)
'''


def _events(bridge: WorkerBridge) -> list[str]:
    return [entry["event"] for entry in bridge.security_events]


async def test_worker_becomes_ready(bridge) -> None:
    assert await bridge.wait_until_ready()
    assert bridge.is_ready
    assert bridge.status()["pid"] is not None
    assert "worker_initialized" in _events(bridge)


async def test_globals_do_not_leak_between_runs(bridge) -> None:
    first = await bridge.execute("x = 1")
    second = await bridge.execute("print(x)")
    assert first.success
    assert not second.success
    assert second.error.startswith("NameError")
    assert second.stdout != "1"


async def test_builtins_do_not_leak_between_runs(bridge) -> None:
    await bridge.execute("print.__self__.leak = 42")
    second = await bridge.execute("print(leak)")
    assert not second.success
    assert second.error.startswith("NameError")


async def test_host_stays_out_of_reach_through_loaded_modules(bridge) -> None:
    attempts = [
        'print(print.__self__.open("/etc/hostname").read())',
        'print(print.__self__.__import__("os").listdir("/"))',
        'import random\nrandom._os.system("echo owned")',
        'print.__self__.__import__("_socket").socket()',
        'print.__self__.open("notes.py", "w").write("x")',
    ]
    for code in attempts:
        result = await bridge.execute(code)
        assert not result.success, code
        assert result.error.startswith("PermissionError"), result.error
        assert "disabled in sandbox mode" in result.error


async def test_stdlib_imports_still_load_after_hardening(bridge) -> None:
    result = await bridge.execute("import colorsys\nprint(colorsys.rgb_to_hsv(1.0, 0.0, 0.0)[0])")
    assert result.success
    assert result.stdout == "0.0"


async def test_infinite_loop_resolves_as_timeout(bridge) -> None:
    await bridge.wait_until_ready()
    start = time.monotonic()
    result = await bridge.execute("while True:\n    pass", timeout_ms=500)
    elapsed = time.monotonic() - start
    assert result.timed_out
    assert not result.success
    assert elapsed < 1.5


async def test_concurrent_executions_get_exactly_one_response_each(bridge) -> None:
    results = await asyncio.gather(*(bridge.execute(f"print({i})") for i in range(5)))
    assert [r.stdout for r in results] == ["0", "1", "2", "3", "4"]
    assert all(r.success for r in results)
    assert bridge.pending_count == 0
    assert bridge.get_stats()["total_executions"] == 5


async def test_stdin_reaches_the_worker(bridge) -> None:
    result = await bridge.execute("print(int(input()) * 2)", stdin="21\n")
    assert result.stdout == "42"


async def test_wedged_worker_hits_backup_timeout_and_is_replaced(bridge) -> None:
    await bridge.wait_until_ready()
    old_pid = bridge.status()["pid"]

    # A loop that stays inside C never reaches the in-worker timer
    wedge = "import collections, itertools\ncollections.deque(itertools.count(), maxlen=0)"
    start = time.monotonic()
    result = await bridge.execute(wedge, timeout_ms=200)
    elapsed = time.monotonic() - start

    assert result.timed_out
    assert result.error == "Worker timeout"
    assert result.logs[0].message == "❌ Worker timeout after 200ms"
    assert 1.0 <= elapsed < 5

    follow_up = await bridge.execute('print("ok")')
    assert follow_up.stdout == "ok"
    assert bridge.status()["pid"] != old_pid
    assert "worker_timeout" in _events(bridge)
    assert "worker_restarted" in _events(bridge)


async def test_crash_fails_the_running_request_and_redispatches_the_rest(settings) -> None:
    bridge = WorkerBridge(settings, command=[sys.executable, "-c", FAKE_WORKER])
    try:
        crashed, echoed = await asyncio.gather(
            bridge.execute("crash"),
            bridge.execute("still here"),
        )
        assert not crashed.success
        assert crashed.error == "Worker crashed"
        assert echoed.success
        assert echoed.stdout == "still here"
        assert bridge.stats["crashes"] >= 1
        assert "worker_error" in _events(bridge)
        assert bridge.pending_count == 0
    finally:
        await bridge.terminate()


async def test_crash_without_auto_restart_stays_faulted_until_restart(make_settings) -> None:
    bridge = WorkerBridge(make_settings(WORKER_AUTO_RESTART=False), command=[sys.executable, "-c", FAKE_WORKER])
    try:
        result = await bridge.execute("crash")
        assert result.error == "Worker crashed"
        await asyncio.sleep(0.1)
        assert bridge.fault == "Worker process exited (code 3)"
        assert "worker_restarted" not in _events(bridge)

        assert await bridge.restart()
        assert bridge.fault is None
        assert (await bridge.execute("again")).stdout == "again"
    finally:
        await bridge.terminate()


async def test_terminate_resolves_pending_calls(bridge) -> None:
    task = asyncio.ensure_future(bridge.execute("while True:\n    pass", timeout_ms=10000))
    while bridge.pending_count == 0:
        await asyncio.sleep(0.01)

    await bridge.terminate()
    result = await asyncio.wait_for(task, timeout=2)
    assert not result.success
    assert result.error == "Worker terminated"
    assert not bridge.is_ready
    assert "worker_terminated" in _events(bridge)


async def test_per_run_isolation_uses_a_fresh_worker_each_time(make_settings) -> None:
    bridge = WorkerBridge(make_settings(WORKER_ISOLATION="per_run"))
    try:
        first = await bridge.execute('print("a")')
        second = await bridge.execute('print("b")')
        assert (first.stdout, second.stdout) == ("a", "b")
        workers = [entry["worker"] for entry in bridge.get_execution_history()]
        assert len(set(workers)) == 2
        assert bridge.status()["isolation"] == "per_run"
    finally:
        await bridge.terminate()


async def test_event_callbacks_receive_worker_events(bridge) -> None:
    received = []
    bridge.add_event_callback(received.append)
    await bridge.execute("pass")
    await bridge.terminate()
    assert "worker_terminated" in [entry["event"] for entry in received]


def test_security_event_log_is_bounded(settings) -> None:
    bridge = WorkerBridge(settings)
    for i in range(MAX_SECURITY_EVENTS + 50):
        bridge._record_event("worker_error", {"n": i})
    assert len(bridge.security_events) == MAX_SECURITY_EVENTS
    assert bridge.security_events[0]["data"] == {"n": 50}
