"""Clock and key-value session seams injected into the timing engine."""

import json
import os
import socket
import time
from typing import Any, Dict, Optional, Protocol

from speedround import db
from speedround.models import TimingSessionRecord

BOOT_ID_PATH = '/proc/sys/kernel/random/boot_id'


class Clock(Protocol):
    # readings are only comparable between clocks sharing this id
    clock_id: str

    def now(self) -> float: ...


def _boot_id() -> str:
    try:
        with open(BOOT_ID_PATH) as fh:
            return fh.read().strip()
    except OSError:
        return f"pid-{os.getpid()}"


class MonotonicClock:
    """Monotonic seconds; immune to NTP steps and DST changes.

    CLOCK_MONOTONIC is shared by every process on a host until reboot, so the
    id is host + boot id. Where no boot id is exposed it falls back to the
    process id and timing sessions are pinned to the worker that started them.
    """

    def __init__(self):
        self.clock_id = f"{socket.gethostname()}:{_boot_id()}"

    def now(self) -> float:
        return time.monotonic()


class KeyValueSession(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...
    def set(self, key: str, value: Dict[str, Any]) -> None: ...
    def remove(self, key: str) -> None: ...


class MemorySessionStore:
    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key):
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def set(self, key, value):
        self._data[key] = dict(value)

    def remove(self, key):
        self._data.pop(key, None)


class DatabaseSessionStore:
    """Stages timing state in the timing_session table; the engine commits."""

    def get(self, key):
        record = db.session.get(TimingSessionRecord, key)
        return record.data if record is not None else None

    def set(self, key, value):
        record = db.session.get(TimingSessionRecord, key)
        if record is None:
            record = TimingSessionRecord(key=key)
        record.data_json = json.dumps(value, sort_keys=True)
        db.session.add(record)

    def remove(self, key):
        record = db.session.get(TimingSessionRecord, key)
        if record is not None:
            db.session.delete(record)
