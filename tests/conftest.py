from __future__ import annotations

import logging

import pytest

import memguard
from memguard import CommandResult, CouplingResolver, Guard, ProcessRecord, SignalOutcome, SignalResult

MiB = 1024**2


class FakeTable:
    """Stands in for ProcessTable; records every call it receives."""

    def __init__(self, records=(), rss=None, terminate=None, kill=None):
        self.records = list(records)
        self.rss_by_pid = dict(rss) if rss is not None else {r.pid: r.rss for r in self.records}
        self.terminate_results = dict(terminate or {})
        self.kill_results = dict(kill or {})
        self.calls = []

    def refresh(self):
        self.calls.append(("refresh",))
        return list(self.records)

    def rss(self, pid):
        self.calls.append(("rss", pid))
        return self.rss_by_pid.get(pid)

    def terminate(self, pid):
        self.calls.append(("terminate", pid))
        return self.terminate_results.get(pid, SignalResult(SignalOutcome.SENT))

    def kill(self, pid):
        self.calls.append(("kill", pid))
        return self.kill_results.get(pid, SignalResult(SignalOutcome.SENT))

    def signalled(self):
        return [call for call in self.calls if call[0] in ("terminate", "kill")]


class FakeRunner:
    """Answers argv tuples from a table; unknown commands exit 1."""

    def __init__(self, answers=None):
        self.answers = dict(answers or {})
        self.calls = []

    def run(self, argv):
        self.calls.append(tuple(argv))
        return self.answers.get(tuple(argv), CommandResult(1, ""))


class FakeNotifier:
    def __init__(self, failure=None):
        self.failure = failure
        self.messages = []

    def write(self, pid, message):
        self.messages.append((pid, message))
        return self.failure


def lsof(port=8000):
    return ("lsof", "-i", f":{port}", "-t")


def ps(pid):
    return ("ps", "-o", "uid=", "-p", str(pid))


def record(pid, uid="1000", name="proc", rss=10 * MiB):
    return ProcessRecord(pid=pid, uid=uid, name=name, rss=rss)


@pytest.fixture
def make_guard():
    def _make(records=(), answers=None, max_memory=100 * MiB, table=None, notifier=None, port=8000, **kwargs):
        sleeps = []
        guard = Guard(
            max_memory=max_memory,
            table=table if table is not None else FakeTable(records),
            resolver=CouplingResolver(FakeRunner(answers), port=port),
            notifier=notifier if notifier is not None else FakeNotifier(),
            sleep=sleeps.append,
            **kwargs,
        )
        guard.sleeps = sleeps
        return guard

    return _make


@pytest.fixture(autouse=True)
def restore_memguard_logger():
    """setup_logging() rewires the memguard logger; put it back for caplog."""
    log = logging.getLogger("memguard")
    saved = (list(log.handlers), log.level, log.propagate)
    yield
    log.handlers[:] = saved[0]
    log.setLevel(saved[1])
    log.propagate = saved[2]


@pytest.fixture
def debug_logs(caplog):
    caplog.set_level(logging.DEBUG, logger=memguard.logger.name)
    return caplog
