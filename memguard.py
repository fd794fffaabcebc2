#!/usr/bin/env python3
"""
memguard.py
===========

A resident memory guard that

1. **Polls the process table** every ``--interval`` seconds and kills any
   process whose resident memory (RSS) exceeds ``--max-memory``.
2. **Escalates politely**: SIGTERM first, a short grace period, and SIGKILL
   only when the graceful signal could not be delivered.
3. **Takes the partner down too**: after killing a violator it looks for the
   process bound to ``--port`` (default 8000) that belongs to the *same user*
   and kills it as well, so a half-dead server/worker pair does not linger.
4. **Tells the victim why**: on Linux a red one-line message is written into
   the killed process's stderr (``/proc/<pid>/fd/2``) before it goes down.

Every cycle works on a fresh snapshot; nothing is remembered between cycles.

────────────────────────────────────────────────────────────────────────────
USAGE EXAMPLES
────────────────────────────────────────────────────────────────────────────
# 1) Defaults: 16GB ceiling (decimal, 16 000 000 000 bytes), 1 s interval
sudo ./memguard.py

# 2) Tighter ceiling, slower polling
sudo ./memguard.py --max-memory 1000MB --interval 5

# 3) Binary units and a different coupled port, with a rotating log file
sudo ./memguard.py --max-memory 8GiB --port 8080 --log-file /var/log/memguard.log
────────────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import argparse
import enum
import logging
import logging.handlers
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Callable

import psutil

# Version information
try:
    from _version import __version__
except ImportError:
    __version__ = "unknown"

# ──────────────────────────────── Defaults ──────────────────────────────────
DEF_MAX_MEMORY = "16GB"  # per-process RSS ceiling
DEF_INTERVAL_SEC = 1  # s between scans
DEF_COUPLED_PORT = 8000  # port whose owner dies with the violator
DEF_GRACE_MS = 100  # wait after SIGTERM
DEF_LOG_LEVEL = "info"
LOG_LEVELS = ["debug", "info", "warning", "error"]

LOG_ENV_VAR = "MEMGUARD_LOG"
LOG_MAX_BYTES = 50 * 1024 * 1024
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

STDERR_PATH = "/proc/{pid}/fd/2"
KILL_MESSAGE = "\n\x1b[31mProcess killed by memguard: Memory usage {usage} exceeds limit {limit}\x1b[0m\n"

REASON_LIMIT = "Memory limit exceeded"
REASON_COUPLED = "Coupled process (port {port})"

MAX_U64 = 2**64 - 1

logger = logging.getLogger("memguard")


# ──────────────────────────────  Data structures  ───────────────────────────
@dataclass(frozen=True)
class ProcessRecord:
    """One row of the process table, as seen by a single refresh."""

    pid: int
    uid: str | None
    name: str
    rss: int


class SignalOutcome(enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"
    GONE = "gone"


@dataclass(frozen=True)
class SignalResult:
    outcome: SignalOutcome
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is SignalOutcome.SENT


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str


class MemorySizeError(ValueError):
    """Raised when a memory size string cannot be parsed."""


# ─────────────────────────────  Tiny helpers  ───────────────────────────────
def format_bytes(n: int) -> str:
    """Render a byte count with binary scaling and two decimals."""
    if n >= 1024**3:
        return f"{n / 1024**3:.2f} GB"
    if n >= 1024**2:
        return f"{n / 1024**2:.2f} MB"
    if n >= 1024:
        return f"{n / 1024:.2f} KB"
    return f"{n} B"


_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d*)?|\.\d+)\s*(?:([kmgtpe])(i)?b?|b)?\s*$", re.IGNORECASE)
_PREFIX_POWER = {"k": 1, "m": 2, "g": 3, "t": 4, "p": 5, "e": 6}


def parse_memory(text: str) -> int:
    """
    Parse a human size string ("16GB", "1000 MB", "8GiB", "512") to bytes.

    Plain prefixes are decimal (``GB`` = 1000**3), ``i`` prefixes are binary
    (``GiB`` = 1024**3) and a bare number is a byte count. Fractions are
    truncated toward zero.
    """
    match = _SIZE_RE.match(text)
    if not match:
        raise MemorySizeError(f"invalid memory size {text!r}")

    number, prefix, binary = match.groups()
    value = Decimal(number)
    if prefix:
        base = 1024 if binary else 1000
        value *= base ** _PREFIX_POWER[prefix.lower()]

    size = int(value)
    if size > MAX_U64:
        raise MemorySizeError(f"memory size {text!r} is too large")
    return size


# ─────────────────────────── System capabilities ────────────────────────────
class ProcessTable:
    """psutil-backed process snapshot plus the signals we can send."""

    ATTRS = ["pid", "name", "uids", "memory_info"]

    def __init__(self) -> None:
        self.records: list[ProcessRecord] = []

    def refresh(self) -> list[ProcessRecord]:
        records = []
        for proc in psutil.process_iter(self.ATTRS):
            # process_iter fills unreadable attributes with None
            memory_info = proc.info.get("memory_info")
            if not memory_info:
                continue
            uids = proc.info.get("uids")
            records.append(
                ProcessRecord(
                    pid=proc.info["pid"],
                    uid=str(uids.real) if uids else None,
                    name=proc.info.get("name") or "",
                    rss=memory_info.rss,
                )
            )
        self.records = records
        return records

    def rss(self, pid: int) -> int | None:
        try:
            return psutil.Process(pid).memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def terminate(self, pid: int) -> SignalResult:
        # psutil's terminate() is TerminateProcess on Windows, not a graceful signal
        if psutil.WINDOWS:
            return SignalResult(SignalOutcome.UNSUPPORTED, "SIGTERM not available on this platform")
        return self._signal(pid, "terminate")

    def kill(self, pid: int) -> SignalResult:
        return self._signal(pid, "kill")

    @staticmethod
    def _signal(pid: int, action: str) -> SignalResult:
        # psutil raises ValueError for PID 0 (kernel_task on macOS/BSD)
        if pid <= 0:
            return SignalResult(SignalOutcome.FAILED, f"refusing to signal PID {pid}")
        try:
            getattr(psutil.Process(pid), action)()
        except psutil.NoSuchProcess:
            return SignalResult(SignalOutcome.GONE, "no such process")
        except psutil.AccessDenied:
            return SignalResult(SignalOutcome.FAILED, "access denied")
        except OSError as e:
            return SignalResult(SignalOutcome.FAILED, str(e))
        return SignalResult(SignalOutcome.SENT)


class CommandRunner:
    """Runs external utilities; returns None when the command cannot start."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    def run(self, argv: list[str]) -> CommandResult | None:
        try:
            result = subprocess.run(
                argv, capture_output=True, text=True, errors="replace", check=False, timeout=self.timeout
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Could not run %s: %s", argv[0], e)
            return None
        return CommandResult(result.returncode, result.stdout)


class StderrNotifier:
    """Writes a message into another process's stderr through procfs."""

    def write(self, pid: int, message: str) -> str | None:
        """Return None on success, otherwise the reason the write failed."""
        # O_NONBLOCK: opening a FIFO with no reader fails with ENXIO instead of hanging
        try:
            fd = os.open(STDERR_PATH.format(pid=pid), os.O_WRONLY | os.O_APPEND | os.O_NONBLOCK)
        except OSError as e:
            return str(e)
        try:
            os.write(fd, message.encode("utf-8"))
        except OSError as e:
            return str(e)
        finally:
            os.close(fd)
        return None


class NullNotifier:
    def write(self, pid: int, message: str) -> str | None:  # noqa: ARG002
        return "stderr injection not supported on this platform"


def default_notifier() -> StderrNotifier | NullNotifier:
    return StderrNotifier() if psutil.LINUX else NullNotifier()


# ──────────────────────────── Coupling resolver ─────────────────────────────
class CouplingResolver:
    """Find the process on ``port`` owned by a given user (lsof + ps)."""

    def __init__(self, runner: CommandRunner | None = None, port: int = DEF_COUPLED_PORT) -> None:
        self.runner = runner or CommandRunner()
        self.port = port

    def pids_on_port(self) -> list[int]:
        result = self.runner.run(["lsof", "-i", f":{self.port}", "-t"])
        if result is None or result.returncode != 0:
            return []
        pids = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.isdigit():
                pids.append(int(line))
        return pids

    def owner_of(self, pid: int) -> str | None:
        result = self.runner.run(["ps", "-o", "uid=", "-p", str(pid)])
        if result is None or result.returncode != 0:
            return None
        return result.stdout.strip()

    def find(self, uid: str) -> int | None:
        for pid in self.pids_on_port():
            if self.owner_of(pid) == uid:
                return pid
        return None


# ─────────────────────────────── Guard state ────────────────────────────────
@dataclass
class Guard:
    """Everything one scan/enforce cycle needs, owned by the caller."""

    max_memory: int
    interval: float = DEF_INTERVAL_SEC
    grace: float = DEF_GRACE_MS / 1000
    table: ProcessTable = field(default_factory=ProcessTable)
    resolver: CouplingResolver = field(default_factory=CouplingResolver)
    notifier: StderrNotifier | NullNotifier = field(default_factory=default_notifier)
    sleep: Callable[[float], None] = time.sleep
    cycles: int = 0
    kills: int = 0


# ───────────────────────────── Kill wrapper  ────────────────────────────────
def terminate(guard: Guard, pid: int, reason: str) -> None:
    """
    Escalating kill for one PID:
      • tell the process why via its stderr (best effort),
      • SIGTERM and wait the grace period,
      • SIGKILL if SIGTERM could not be delivered.
    Never raises; every failure is logged here.
    """
    rss = guard.table.rss(pid)
    if rss is not None:
        message = KILL_MESSAGE.format(usage=format_bytes(rss), limit=format_bytes(guard.max_memory))
        failure = guard.notifier.write(pid, message)
        if failure:
            logger.debug("Could not write to stderr of process %d: %s", pid, failure)

    graceful = guard.table.terminate(pid)
    if graceful.ok:
        guard.sleep(guard.grace)
        guard.kills += 1
        logger.info("%s - Sent SIGTERM to process %d", reason, pid)
        return

    logger.debug("%s - SIGTERM to process %d not delivered (%s): %s", reason, pid, graceful.outcome.value, graceful.reason)
    forced = guard.table.kill(pid)
    if forced.ok:
        guard.kills += 1
        logger.info("%s - Sent SIGKILL to process %d", reason, pid)
    else:
        logger.error("%s - Failed to kill process %d: %s", reason, pid, forced.reason)


# ───────────────────────────── Main monitor  ────────────────────────────────
def enforce(guard: Guard, record: ProcessRecord, handled: set[int]) -> list[int]:
    """Kill one violator and its coupled process; return the PIDs terminated."""
    if record.uid is None:
        logger.debug("Skipping process %d (%s): owner unknown", record.pid, record.name)
        return []
    if record.pid in handled:
        logger.debug("Process %d already terminated in this cycle", record.pid)
        return []

    killed = [record.pid]
    logger.warning(
        "Process '%s' (PID: %d, UID: %s) killed by memguard: Memory usage %s exceeds limit %s",
        record.name,
        record.pid,
        record.uid,
        format_bytes(record.rss),
        format_bytes(guard.max_memory),
    )
    handled.add(record.pid)
    terminate(guard, record.pid, REASON_LIMIT)

    coupled = guard.resolver.find(record.uid)
    if coupled is not None and coupled != record.pid and coupled not in handled:
        handled.add(coupled)
        terminate(guard, coupled, REASON_COUPLED.format(port=guard.resolver.port))
        killed.append(coupled)
    return killed


def run_cycle(guard: Guard) -> list[int]:
    """Scan one fresh snapshot; return the PIDs terminated, in order."""
    guard.cycles += 1
    handled: set[int] = set()  # a PID is terminated at most once per cycle
    killed: list[int] = []
    for record in guard.table.refresh():
        if record.rss > guard.max_memory:
            killed.extend(enforce(guard, record, handled))
    return killed


def monitor(guard: Guard) -> None:
    logger.info("Starting memguard v%s...", __version__)
    logger.info("Maximum allowed memory per process: %s", format_bytes(guard.max_memory))
    logger.info("Check interval: %ss", guard.interval)
    logger.info("Coupled port: %d", guard.resolver.port)

    while True:
        run_cycle(guard)
        guard.sleep(guard.interval)


# ────────────────────────────────  Logging  ─────────────────────────────────
def setup_logging(level: str = DEF_LOG_LEVEL, log_file: Path | None = None) -> None:
    """Log to stderr and, optionally, to a file rotated at 50MB."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=1))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)

    logger.handlers.clear()
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False


def warn_if_unprivileged() -> None:
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() != 0:
        logger.warning("Not running as root: processes of other users cannot be signalled.")


# ────────────────────────────  CLI / argparse  ──────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    epilog = f"""
MEMORY LIMIT:
A process is a *violator* when its resident memory (RSS) is strictly greater
than --max-memory. Units: B, KB/MB/GB/TB are decimal (1000-based),
KiB/MiB/GiB/TiB are binary (1024-based); a bare number is bytes.

TERMINATION:
Violators receive SIGTERM followed by a {DEF_GRACE_MS} ms grace period. If
SIGTERM cannot be delivered, SIGKILL is sent instead. On Linux a message is
written to the victim's stderr first.

COUPLED PROCESS:
After each violator, the process listening on --port (found with lsof) that
belongs to the same user (checked with ps) is terminated as well.

LOGGING:
Log level comes from --log-level, falling back to ${LOG_ENV_VAR}.

EXAMPLES:
  sudo ./memguard.py --max-memory 16GB --interval 1
  sudo ./memguard.py --max-memory 4GiB --port 8080 --log-file ~/memguard.log
"""
    p = argparse.ArgumentParser(
        prog="memguard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Memory guard daemon: kill processes above a memory ceiling and their coupled server.",
        epilog=epilog,
    )

    p.add_argument("--version", action="version", version=f"memguard v{__version__}")

    p.add_argument(
        "--max-memory",
        default=DEF_MAX_MEMORY,
        help=f'Maximum memory allowed per process, e.g. "16GB", "1000MB", "8GiB". (default: {DEF_MAX_MEMORY})',
    )
    p.add_argument(
        "--interval",
        type=int,
        default=DEF_INTERVAL_SEC,
        help=f"Check interval in seconds. (default: {DEF_INTERVAL_SEC})",
    )
    p.add_argument(
        "--port",
        type=int,
        default=DEF_COUPLED_PORT,
        help=f"Port whose same-user owner is killed together with a violator. (default: {DEF_COUPLED_PORT})",
    )
    p.add_argument(
        "--grace-ms",
        type=int,
        default=DEF_GRACE_MS,
        help=f"Milliseconds to wait after SIGTERM. (default: {DEF_GRACE_MS})",
    )
    p.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also log to this file (rotated at 50MB).",
    )
    p.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=os.environ.get(LOG_ENV_VAR, DEF_LOG_LEVEL).lower(),
        help=f"Logging verbosity. (default: ${LOG_ENV_VAR} or {DEF_LOG_LEVEL})",
    )
    return p


# ───────────────────────────── entry-point ──────────────────────────────────
def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        max_memory = parse_memory(args.max_memory)
    except MemorySizeError as e:
        sys.exit(f"Error: Failed to parse memory size: {e}")
    if args.interval < 0:
        sys.exit("Error: --interval must be non-negative")
    if args.grace_ms < 0:
        sys.exit("Error: --grace-ms must be non-negative")
    if not 1 <= args.port <= 65535:
        sys.exit(f"Error: --port ({args.port}) must be between 1 and 65535")
    # the default comes from the environment and bypasses argparse choices
    log_level = "warning" if args.log_level == "warn" else args.log_level
    if log_level not in LOG_LEVELS:
        sys.exit(f"Error: unknown log level {args.log_level!r} (from ${LOG_ENV_VAR}?)")

    setup_logging(log_level, args.log_file)
    warn_if_unprivileged()

    guard = Guard(
        max_memory=max_memory,
        interval=args.interval,
        grace=args.grace_ms / 1000,
        resolver=CouplingResolver(CommandRunner(), port=args.port),
    )
    try:
        monitor(guard)
    except KeyboardInterrupt:
        logger.info("Monitoring stopped after %d cycles, %d processes killed.", guard.cycles, guard.kills)


if __name__ == "__main__":
    main()
