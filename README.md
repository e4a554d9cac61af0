# mutualwatch

`mutualwatch` keeps a long-running application alive by pairing it with a
watchdog process. The two processes watch each other. Each side sends its
partner a `SIGUSR1` heartbeat every interval and counts the heartbeats it has
sent since it last received one. When that count is greater than the allowed
number of intervals, the partner is considered dead. It is started again, and
the two processes resynchronise before carrying on.

Both sides run the same logic. If the watchdog dies, the application revives
it. If the application dies, the watchdog revives the application. `SIGUSR2`
tells a side to stop watching.

The package relies on POSIX signals and process creation, so it runs on Linux
and other POSIX systems. It has no dependencies outside the standard library.

## Installation

```
pip install mutualwatch
```

## Watching an application

Call `start` from the main thread of your program. Pass it the heartbeat
interval in seconds, the number of intervals that may be missed before
recovery, and the program's command line. Call `stop` when the application no
longer needs watching.

```python
import sys
import time

from mutualwatch.watchdog import start, stop

start(2, 3, sys.argv)
try:
    for _ in range(1000):
        time.sleep(1)
finally:
    stop()
```

`argv[0]` must be the path of an executable, for example a script with a
shebang line and the execute bit set. The partner runs that path with
`argv[1:]` to bring your application back. The watchdog side is started the
same way.

`start` returns once the two processes have synchronised and the heartbeat loop
is running in a background thread. After that:

- the first heartbeat goes out about one second later, and another follows
  every interval;
- the partner is checked every interval plus one second, starting about two
  seconds after `start`.

`start` returns the process-wide `Watchdog` object. `stop` does the following:

- sends the partner `SIGUSR2`;
- ends the heartbeat thread;
- closes the synchronisation channel;
- removes the shared configuration file, if this process wrote it.

### The `Watchdog` class

`Watchdog(wd_exe=None, config_path=None)` offers the same operations as
methods: `start(interval_in_sec, intervals_per_check, argv)` and `stop()`.
It also has these members:

- `running` – true while the heartbeat thread is alive.
- `partner_pid` – the process id of the current partner.
- `wd_exe` – the program that is started as the watchdog.
- `config_path` – the absolute path of the shared configuration file.

Signal handlers belong to the whole process, so only one `Watchdog` should be
active in a process at a time.

### Which program is the watchdog

The watchdog program is the first of these that is set:

1. the `wd_exe` argument;
2. the `WD_EXE` environment variable;
3. `exe/wd_exe`.

To use the bundled command, point `WD_EXE` at the full path of the installed
`mutualwatch-wd` script. A process counts as the watchdog side when the
absolute path of its `argv[0]` equals the absolute path of `wd_exe`. The
watchdog side revives the application; the application side revives the
watchdog.

### Environment variables

| Variable | Meaning |
| --- | --- |
| `WD_EXE` | The watchdog program to start. |
| `WD_CONFIG` | Path of the shared configuration file. The default is a file in the system temporary directory whose name is derived from the watchdog path. |
| `WD_PID` | Set in every process the watchdog starts. When it is present, `start` treats the process as a revived one: its partner is its parent, and the interval and threshold come from the shared configuration rather than from the arguments. |
| `WD_SYNC_FD` | File descriptor of the socket a revived process uses to synchronise with its parent. |

### Errors

Failures are raised as exceptions, all derived from `WatchdogError`:

- `InitError` – the watchdog could not be set up. Causes include:
  - `start` called from a thread other than the main thread;
  - an empty `argv`;
  - the shared configuration could not be written or read;
  - the partner process could not be started;
  - synchronising with the partner failed;
  - the watchdog is already running.
- `TerminationError` – the watchdog is not running, or the partner could not be
  signalled. When the partner cannot be signalled, the local thread has still
  been stopped and the resources have still been released.

Each error class carries a `status` attribute. `WDStatus` lists the values:
`SUCCESS`, `INIT_FAIL`, `TERMINATION_FAIL` and `MEM_ALLOC_FAIL`.

```python
import sys

from mutualwatch.watchdog import InitError, start

try:
    start(2, 3, sys.argv)
except InitError as exc:
    print(f"could not start the watchdog: {exc}")
```

### Building blocks

- `SharedConfig(interval, threshold, app_exe)` is the record both partners
  share. `to_bytes()` encodes it as a fixed 272-byte record, with the path
  cut to 255 bytes. `SharedConfig.from_bytes(data)` decodes it and raises
  `ValueError` when the size is wrong.
- `Scheduler` runs repeating tasks:
  - `add_task(action, start_time, interval)` schedules `action` at the
    absolute time `start_time` and then every `interval` seconds, and returns
    a task id. A non-positive interval raises `ValueError`.
  - A task is not rescheduled if its action returns `False`.
  - `run()` executes tasks until `stop()` is called or no task is left.

## The watchdog process

The `mutualwatch-wd` command is the watchdog side. It does the following:

1. reads the shared configuration from the file named by `WD_CONFIG`;
2. starts its own side of the heartbeat;
3. prints `App is being Watched from WD`;
4. waits until it is told to stop, then exits with status 0.

It exits with status 1 in two cases: `WD_CONFIG` is missing or the file cannot
be read, or the watchdog fails to start. You do not normally run it by hand;
`start` launches it for you, with the environment it needs.

```
mutualwatch-wd
```

`mutualwatch.wd_main.read_shared_config(path)` reads the same file from
Python.

## What it does not do

- It does not run on Windows.
- It has no configuration file or logging setup of its own. Progress and
  heartbeat messages are printed in colour to standard output.
- It does not limit how often a partner is revived.

## Development

```
pip install -e ".[test]"
pytest
```