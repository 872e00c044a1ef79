"""
Replica state — a node's local view of the shared counter, with
snapshot / checkpoint / restore.

Checkpoint layout (one file per node):
    node-<pid>-checkpoint.json   {"counter": int, "lamport": int}
    node-<pid>-precrash.json     {"preCounter": int, "preLamport": int}
"""
import os
import json
import threading
import logging
from dataclasses import dataclass


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable pre-image taken right before a critical operation."""
    counter: int
    lamport: int

    def to_dict(self):
        return {'counter': self.counter, 'lamport': self.lamport}


def checkpoint_path_for(pid: int, directory: str = '.') -> str:
    return os.path.join(directory, f"node-{pid}-checkpoint.json")


def crash_record_path_for(pid: int, directory: str = '.') -> str:
    return os.path.join(directory, f"node-{pid}-precrash.json")


class ReplicaState:
    def __init__(self, pid: int, directory: str = '.'):
        self.pid = pid
        self.directory = directory
        self.checkpoint_path = checkpoint_path_for(pid, directory)
        self.crash_record_path = crash_record_path_for(pid, directory)
        self.counter = 0
        self.last_applied = 0
        # Reentrant: restore_from_checkpoint calls load_checkpoint under the lock.
        self.lock = threading.RLock()
        self.logger = logging.getLogger(f"Replica-{pid}")
        self.load_checkpoint()

    # ── State management ─────────────────────────────────────────────────────

    def snapshot(self) -> StateSnapshot:
        with self.lock:
            return StateSnapshot(self.counter, self.last_applied)

    def apply(self, counter: int, timestamp: int) -> bool:
        """Apply a replicated value. Stale or duplicate timestamps are discarded."""
        with self.lock:
            if timestamp <= self.last_applied:
                return False
            self.counter = counter
            self.last_applied = timestamp
            return True

    def apply_local_increment(self, timestamp: int) -> StateSnapshot:
        """Tentative local operation; the coordinator's STATE is authoritative."""
        with self.lock:
            self.counter += 1
            self.last_applied = max(self.last_applied, timestamp)
            return StateSnapshot(self.counter, self.last_applied)

    def restore_snapshot(self, snap: StateSnapshot):
        with self.lock:
            self.counter = snap.counter
            self.last_applied = snap.lamport

    def restore_from_checkpoint(self) -> StateSnapshot:
        """
        Discard in-memory changes and reload the last durable checkpoint.
        Without one the replica returns to the cold-start zero state.
        """
        with self.lock:
            if not self.load_checkpoint():
                self.counter = 0
                self.last_applied = 0
            return StateSnapshot(self.counter, self.last_applied)

    # ── Durable storage ──────────────────────────────────────────────────────

    def save_checkpoint(self) -> bool:
        """Best effort: I/O failures are logged and reported as False."""
        with self.lock:
            data = {'counter': self.counter, 'lamport': self.last_applied}
            return self._write_json(self.checkpoint_path, data)

    def load_checkpoint(self) -> bool:
        with self.lock:
            if not os.path.exists(self.checkpoint_path):
                self.logger.info("No checkpoint found, starting from zero state")
                return False
            try:
                with open(self.checkpoint_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                counter = int(data['counter'])
                lamport = int(data['lamport'])
            except (OSError, ValueError, KeyError, TypeError) as e:
                self.logger.error(f"Failed to read checkpoint {self.checkpoint_path}: {e}")
                return False
            self.counter = counter
            self.last_applied = lamport
            self.logger.info(f"Checkpoint loaded: counter={counter} lamport={lamport}")
            return True

    def write_crash_record(self, snap: StateSnapshot) -> bool:
        return self._write_json(self.crash_record_path,
                                {'preCounter': snap.counter, 'preLamport': snap.lamport})

    def _write_json(self, path: str, data: dict) -> bool:
        tmp_path = path + '.tmp'
        try:
            if self.directory:
                os.makedirs(self.directory, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            return True
        except OSError as e:
            self.logger.error(f"Failed to write {path}: {e}")
            return False

    def __repr__(self):
        return f"ReplicaState(pid={self.pid}, counter={self.counter}, lamport={self.last_applied})"
