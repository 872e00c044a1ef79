"""
Shared data models for the coordinator/node protocol.
"""
import json
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict

COORDINATOR_PID = 0


class MessageType(str, Enum):
    JOIN = 'JOIN'
    REQUEST = 'REQUEST'
    GRANT = 'GRANT'
    DO_OP = 'DO_OP'
    RELEASE = 'RELEASE'
    STATE = 'STATE'
    ROLLBACK = 'ROLLBACK'


@dataclass
class Message:
    type: MessageType
    pid: int
    clock: int
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        d = asdict(self)
        d['type'] = self.type.value
        return d

    @classmethod
    def from_dict(cls, d):
        """Raises ValueError on an unknown type or a non-integer pid/clock."""
        try:
            msg_type = MessageType(d['type'])
            pid = int(d['pid'])
            clock = int(d['clock'])
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed message: {d!r}") from e
        payload = d.get('payload')
        if not isinstance(payload, dict):
            payload = {}
        return cls(msg_type, pid, clock, payload)

    # ── Typed constructors, one per message kind ─────────────────────────────

    @classmethod
    def join(cls, pid: int, clock: int):
        return cls(MessageType.JOIN, pid, clock, {})

    @classmethod
    def request(cls, pid: int, clock: int):
        return cls(MessageType.REQUEST, pid, clock, {})

    @classmethod
    def grant(cls, clock: int):
        return cls(MessageType.GRANT, COORDINATOR_PID, clock, {})

    @classmethod
    def do_op(cls, pid: int, clock: int, delta: int = 1):
        return cls(MessageType.DO_OP, pid, clock, {'delta': delta})

    @classmethod
    def release(cls, pid: int, clock: int):
        return cls(MessageType.RELEASE, pid, clock, {})

    @classmethod
    def state(cls, counter: int, clock: int):
        return cls(MessageType.STATE, COORDINATOR_PID, clock, {'counter': counter})

    @classmethod
    def rollback(cls, reason: str, clock: int):
        return cls(MessageType.ROLLBACK, COORDINATOR_PID, clock, {'reason': reason})

    # ── Payload accessors ────────────────────────────────────────────────────

    def counter_or(self, fallback: int) -> int:
        """STATE counter, or `fallback` when the payload does not carry a usable one."""
        value = self.payload.get('counter')
        if isinstance(value, bool):
            return fallback
        try:
            return int(value)
        except (TypeError, ValueError):
            return fallback

    def reason(self) -> str:
        value = self.payload.get('reason')
        return value if isinstance(value, str) else 'unspecified'


@dataclass(order=True)
class PendingRequest:
    """Coordinator queue entry, ordered by (lamport_time, pid)."""
    lamport_time: int
    pid: int
    channel: Any = field(compare=False, repr=False)


# ─── TCP message protocol ────────────────────────────────────────────────────
# All messages are newline-delimited JSON objects:
#
#   { "type": "JOIN|REQUEST|GRANT|DO_OP|RELEASE|STATE|ROLLBACK",
#     "pid": int, "clock": int, "payload": {...} }
#
# Payloads:
#   JOIN, REQUEST, GRANT, RELEASE  → {}
#   DO_OP                          → {"delta": 1}
#   STATE                          → {"counter": int}
#   ROLLBACK                       → {"reason": str}

def encode_msg(msg: dict) -> bytes:
    return (json.dumps(msg) + '\n').encode('utf-8')

def decode_msg(data: bytes) -> dict:
    return json.loads(data.decode('utf-8').strip())
