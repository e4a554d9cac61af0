import os
import signal
import sys
import threading
import time
from pathlib import Path

import pytest

from mutualwatch import watchdog
from mutualwatch.watchdog import (
    APP_EXE_NAME_LENGTH,
    CONFIG_ENV,
    SYNC_FD_ENV,
    WD_EXE_ENV,
    WD_PID_ENV,
    InitError,
    Scheduler,
    SharedConfig,
    TerminationError,
    Watchdog,
    WDStatus,
)


def _wait_exit(pid, timeout=20.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        done, status = os.waitpid(pid, os.WNOHANG)
        if done:
            return os.waitstatus_to_exitcode(status)
        time.sleep(0.05)
    os.kill(pid, signal.SIGKILL)
    os.waitpid(pid, 0)
    pytest.fail(f"process {pid} did not exit")


@pytest.fixture
def wd_script(tmp_path, monkeypatch):
    root = Path(__file__).resolve().parents[1]
    paths = [str(root)]
    if os.environ.get("PYTHONPATH"):
        paths.append(os.environ["PYTHONPATH"])
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))
    for name in (WD_PID_ENV, WD_EXE_ENV, CONFIG_ENV, SYNC_FD_ENV):
        monkeypatch.delenv(name, raising=False)
    script = tmp_path / "wd_exe"
    script.write_text(
        f"#!{sys.executable}\n"
        "import sys\n"
        "from mutualwatch.wd_main import main\n"
        "raise SystemExit(main(sys.argv))\n"
    )
    script.chmod(0o755)
    return script


def test_shared_config_round_trip():
    config = SharedConfig(2, 3, "exe/app_exe")
    assert SharedConfig.from_bytes(config.to_bytes()) == config


def test_shared_config_truncates_long_path():
    config = SharedConfig(2, 3, "a" * 400)
    decoded = SharedConfig.from_bytes(config.to_bytes())
    assert decoded.app_exe == "a" * (APP_EXE_NAME_LENGTH - 1)
    assert decoded.interval == 2
    assert decoded.threshold == 3


def test_shared_config_rejects_wrong_size():
    data = SharedConfig(2, 3, "exe/app_exe").to_bytes()
    with pytest.raises(ValueError):
        SharedConfig.from_bytes(data[:-1])


def test_shared_config_rejects_negative_threshold():
    with pytest.raises(ValueError):
        SharedConfig(2, -3, "exe/app_exe").to_bytes()


def test_scheduler_runs_tasks_in_due_order():
    sched = Scheduler()
    order = []
    now = time.time()

    def late():
        order.append("late")
        sched.stop()
        return True

    def early():
        order.append("early")
        return True

    late_id = sched.add_task(late, now + 0.05, 10)
    early_id = sched.add_task(early, now, 10)
    sched.run()
    assert len({late_id, early_id}) == 2
    assert order == ["early", "late"]


def test_scheduler_repeats_task():
    sched = Scheduler()
    calls = []

    def tick():
        calls.append(time.time())
        if len(calls) == 3:
            sched.stop()
        return True

    first_id = sched.add_task(tick, time.time(), 0.01)
    sched.run()
    second_id = sched.add_task(lambda: True, time.time(), 1)
    assert len({first_id, second_id}) == 2
    assert len(calls) == 3
    assert calls == sorted(calls)


def test_scheduler_drops_task_returning_false():
    sched = Scheduler()
    calls = []
    sched.add_task(lambda: calls.append(1) or False, time.time(), 0.01)
    sched.run()
    assert calls == [1]


def test_scheduler_stop_from_other_thread():
    sched = Scheduler()
    sched.add_task(lambda: True, time.time() + 60, 60)
    timer = threading.Timer(0.05, sched.stop)
    began = time.monotonic()
    timer.start()
    sched.run()
    assert time.monotonic() - began < 5


def test_scheduler_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        Scheduler().add_task(lambda: True, time.time(), 0)


def test_scheduler_ids_are_distinct():
    sched = Scheduler()
    ids = {sched.add_task(lambda: True, time.time(), 1) for _ in range(5)}
    assert len(ids) == 5


def test_stop_without_start_raises():
    with pytest.raises(TerminationError) as info:
        Watchdog(wd_exe="exe/wd_exe").stop()
    assert info.value.status == WDStatus.TERMINATION_FAIL


def test_module_stop_without_start_raises():
    with pytest.raises(TerminationError):
        watchdog.stop()


def test_start_with_missing_partner_fails(tmp_path, monkeypatch):
    monkeypatch.delenv(WD_PID_ENV, raising=False)
    config = tmp_path / "cfg"
    dog = Watchdog(wd_exe=str(tmp_path / "missing"), config_path=str(config))
    with pytest.raises(InitError) as info:
        dog.start(2, 3, [str(tmp_path / "app")])
    assert info.value.status == WDStatus.INIT_FAIL
    assert not config.exists()
    assert dog.running is False


def test_start_requires_program_path(tmp_path):
    dog = Watchdog(wd_exe="exe/wd_exe", config_path=str(tmp_path / "cfg"))
    with pytest.raises(InitError):
        dog.start(2, 3, [])


def test_start_and_stop_with_partner(wd_script, tmp_path):
    config_path = tmp_path / "cfg"
    app = str(tmp_path / "app")
    dog = Watchdog(wd_exe=str(wd_script), config_path=str(config_path))
    dog.start(2, 3, [app])
    pid = dog.partner_pid
    try:
        assert dog.running is True
        assert SharedConfig.from_bytes(config_path.read_bytes()) == SharedConfig(2, 3, app)
        with pytest.raises(InitError):
            dog.start(2, 3, [app])
    finally:
        dog.stop()
    assert dog.running is False
    assert not config_path.exists()
    assert _wait_exit(pid) == 0


def test_dead_partner_is_revived(wd_script, tmp_path):
    dog = Watchdog(wd_exe=str(wd_script), config_path=str(tmp_path / "cfg"))
    dog.start(1, 2, [str(tmp_path / "app")])
    first = dog.partner_pid
    try:
        os.kill(first, signal.SIGKILL)
        deadline = time.monotonic() + 30
        while dog.partner_pid == first and time.monotonic() < deadline:
            time.sleep(0.1)
        revived = dog.partner_pid
        assert revived not in (first, 0)
        time.sleep(3)
        assert dog.running is True
    finally:
        dog.stop()
    assert _wait_exit(revived) == 0