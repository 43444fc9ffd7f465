"""Business ID and confirmation-code generation.

IDs are prefixed snowflake-style strings ("hold_7190…", "txn_7190…") so a
reader can tell a hold id from a transaction id in logs and support tickets.
Ordering follows creation time within one process; uniqueness across
processes comes from the machine id bits.
"""

import os
import secrets
import threading
import time

# Unambiguous alphabet for codes read aloud to couriers (no 0/O, 1/I/L)
_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CONFIRMATION_CODE_LENGTH = 6


class SnowflakeIdGenerator:
    """Layout (63 bits): 41-bit ms timestamp | 10-bit machine id | 12-bit sequence."""

    _EPOCH_MS = 1_735_689_600_000  # 2025-01-01T00:00:00Z
    _MACHINE_BITS = 10
    _SEQUENCE_BITS = 12
    _MAX_SEQUENCE = (1 << _SEQUENCE_BITS) - 1

    def __init__(self, machine_id: int = 0) -> None:
        if not (0 <= machine_id < (1 << self._MACHINE_BITS)):
            raise ValueError(f"machine_id must be 0-{(1 << self._MACHINE_BITS) - 1}")
        self._machine_id = machine_id
        self._sequence = 0
        self._last_ms = -1
        self._lock = threading.Lock()

    def next_int(self) -> int:
        with self._lock:
            now_ms = int(time.time() * 1000)
            if now_ms == self._last_ms:
                self._sequence = (self._sequence + 1) & self._MAX_SEQUENCE
                if self._sequence == 0:
                    while now_ms <= self._last_ms:
                        now_ms = int(time.time() * 1000)
            else:
                self._sequence = 0
            self._last_ms = now_ms
            return (
                ((now_ms - self._EPOCH_MS) << (self._MACHINE_BITS + self._SEQUENCE_BITS))
                | (self._machine_id << self._SEQUENCE_BITS)
                | self._sequence
            )


# Each worker process derives a machine id from its pid
_default_generator = SnowflakeIdGenerator(machine_id=os.getpid() % 1024)


def generate_id(prefix: str) -> str:
    """Return a new id such as ``hold_71904...``."""
    return f"{prefix}_{_default_generator.next_int()}"


def generate_confirmation_code(length: int = CONFIRMATION_CODE_LENGTH) -> str:
    """Return a single-use delivery confirmation code from a CSPRNG."""
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))
