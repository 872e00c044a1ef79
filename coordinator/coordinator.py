#!/usr/bin/env python3
"""
Coordinator — central arbiter for the shared counter.

For each connected node:
  1. JOIN registers the node as a replication target
  2. REQUEST enters the (lamport_time, pid) ordered queue
  3. The head of the queue is GRANTed when the critical section is free
  4. DO_OP advances the canonical counter, then STATE is replicated to all
     nodes asynchronously (random per-target delay)
  5. RELEASE frees the critical section and grants the next request

The queue and the busy flag only change together, under one lock, so two
grants can never be outstanding at once.
"""
import heapq
import random
import signal
import socket
import threading
import time
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Tuple

from shared import config
from shared.clock import LogicalClock
from shared.models import Message, MessageType, PendingRequest
from shared.transport import Channel


# ─── Grant expiry policies ───────────────────────────────────────────────────

class NoGrantExpiry:
    """A granted critical section is held until RELEASE, however long that takes."""

    check_interval = None

    def expired(self, granted_at: float, now: float) -> bool:
        return False


class LeaseGrantExpiry:
    """
    A grant older than `seconds` is revoked. The coordinator re-checks the
    holder every `check_interval` seconds as well as on every grant attempt.
    """

    def __init__(self, seconds: float):
        if seconds <= 0:
            raise ValueError("lease must be positive")
        self.seconds = seconds
        self.check_interval = seconds / 4

    def expired(self, granted_at: float, now: float) -> bool:
        return now - granted_at >= self.seconds


class Coordinator:
    """
    Single authority for critical-section order and the canonical counter.

    replication_delay_max: upper bound (seconds) of the simulated network
                           latency applied to each replication send.
    max_replication_workers: replication sends sleeping at the same time.
                           Each target sleeps on its own worker, so the delay
                           bound holds while fewer than this many sends are in
                           flight; beyond that, sends queue behind sleeping ones.
    """

    def __init__(self, replication_delay_max: float = config.REPLICATION_DELAY_MAX,
                 grant_policy=None, max_replication_workers: int = 64):
        self.replication_delay_max = replication_delay_max
        self.grant_policy = grant_policy or NoGrantExpiry()
        self.logger = logging.getLogger('Coordinator')

        self.clock = LogicalClock()
        self._counter = 0
        self._counter_lock = threading.Lock()

        # Request queue, busy flag and holder share self.lock.
        self.lock = threading.Lock()
        self._queue: List[PendingRequest] = []
        self._busy = False
        self._holder: Optional[int] = None
        self._granted_at = 0.0

        self._nodes: Dict[int, Channel] = {}
        self._nodes_lock = threading.Lock()
        self._channels = set()

        self.history: List[Tuple[str, int, int]] = []
        self._history_lock = threading.Lock()

        self._pool = ThreadPoolExecutor(max_workers=max_replication_workers,
                                        thread_name_prefix='replication')
        self._pending = set()
        self._pending_lock = threading.Lock()
        self._server: Optional[socket.socket] = None
        self._stopped = threading.Event()
        self.address: Optional[Tuple[str, int]] = None

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def counter(self) -> int:
        with self._counter_lock:
            return self._counter

    @property
    def busy(self) -> bool:
        with self.lock:
            return self._busy

    @property
    def holder(self) -> Optional[int]:
        with self.lock:
            return self._holder

    def queue_snapshot(self) -> List[Tuple[int, int]]:
        with self.lock:
            return sorted((r.lamport_time, r.pid) for r in self._queue)

    def registered_pids(self) -> List[int]:
        with self._nodes_lock:
            return sorted(self._nodes)

    def _record(self, event: str, pid: int, clock: int):
        with self._history_lock:
            self.history.append((event, pid, clock))

    # ── Message handling ─────────────────────────────────────────────────────

    def handle_message(self, msg: Message, channel: Channel):
        """Dispatch one inbound message. The local clock always moves first."""
        self.clock.update(msg.clock)

        if msg.type == MessageType.JOIN:
            self.handle_join(msg, channel)
        elif msg.type == MessageType.REQUEST:
            self.handle_request(msg, channel)
        elif msg.type == MessageType.DO_OP:
            self.handle_do_op(msg)
        elif msg.type == MessageType.RELEASE:
            self.handle_release(msg)
        else:
            self.logger.debug(f"Ignoring {msg.type.value} from pid={msg.pid}")

    def handle_join(self, msg: Message, channel: Channel):
        with self._nodes_lock:
            self._nodes[msg.pid] = channel
        self.logger.info(f"JOIN pid={msg.pid}")

    def handle_request(self, msg: Message, channel: Channel):
        with self.lock:
            heapq.heappush(self._queue, PendingRequest(msg.clock, msg.pid, channel))
        self._record('REQUEST', msg.pid, msg.clock)
        self.logger.info(f"REQUEST pid={msg.pid} ts={msg.clock}")
        self.try_grant_next()

    def handle_do_op(self, msg: Message):
        # Canonical apply: always +1, whatever the requester did locally.
        with self._counter_lock:
            self._counter += 1
            counter = self._counter
            timestamp = self.clock.increment()
        self._record('DO_OP', msg.pid, timestamp)
        self.logger.info(f"DO_OP pid={msg.pid} -> counter={counter} (ts={timestamp})")
        self.broadcast_state(counter, timestamp)

    def handle_release(self, msg: Message):
        with self.lock:
            if self._holder is not None and self._holder != msg.pid:
                # e.g. a holder whose lease was revoked releasing late
                self.logger.warning(f"Ignoring RELEASE from pid={msg.pid}, pid={self._holder} holds the grant")
                return
            self._busy = False
            self._holder = None
        self._record('RELEASE', msg.pid, msg.clock)
        self.logger.info(f"RELEASE pid={msg.pid}")
        self.try_grant_next()

    # ── Grant algorithm ──────────────────────────────────────────────────────

    def try_grant_next(self):
        """
        Grant the lowest (lamport_time, pid) request if the critical section
        is free. A failed send frees the section again and moves on to the
        next request.
        """
        while True:
            with self.lock:
                if self._busy:
                    now = time.monotonic()
                    if not self.grant_policy.expired(self._granted_at, now):
                        return
                    self.logger.warning(f"Grant to pid={self._holder} expired, revoking")
                    self._record('EXPIRE', self._holder, self.clock.time)
                    self._busy = False
                    self._holder = None
                if not self._queue:
                    return
                req = heapq.heappop(self._queue)
                self._busy = True
                self._holder = req.pid
                self._granted_at = time.monotonic()
                grant = Message.grant(self.clock.increment())
                self._record('GRANT', req.pid, grant.clock)

            try:
                req.channel.send(grant)
                self.logger.info(f"GRANT -> pid={req.pid} (ts={grant.clock})")
                return
            except OSError as e:
                self.logger.error(f"GRANT to pid={req.pid} failed: {e}")
                with self.lock:
                    if self._holder == req.pid:
                        self._busy = False
                        self._holder = None
                self._record('RELEASE', req.pid, grant.clock)

    # ── Asynchronous replication ─────────────────────────────────────────────

    def _targets(self) -> List[Tuple[int, Channel]]:
        with self._nodes_lock:
            return list(self._nodes.items())

    def broadcast_state(self, counter: int, timestamp: int):
        """Fan STATE out to every registered node, each with its own delay."""
        state = Message.state(counter, timestamp)
        for pid, channel in self._targets():
            self._submit(self._replicate, pid, channel, state)

    def _replicate(self, pid: int, channel: Channel, state: Message):
        if self.replication_delay_max > 0:
            time.sleep(random.uniform(0, self.replication_delay_max))
        try:
            channel.send(state)
            self.logger.info(f"STATE -> pid={pid} counter={state.counter_or(-1)} (ts={state.clock})")
        except OSError as e:
            self.logger.warning(f"Replication to pid={pid} failed: {e}")

    def request_global_rollback(self, reason: str):
        """Best-effort ROLLBACK to every registered node. No acknowledgement."""
        rollback = Message.rollback(reason, self.clock.increment())
        self.logger.info(f"Requesting global rollback: {reason}")
        for pid, channel in self._targets():
            self._submit(self._send_rollback, pid, channel, rollback)

    def _send_rollback(self, pid: int, channel: Channel, rollback: Message):
        try:
            channel.send(rollback)
            self.logger.info(f"ROLLBACK -> pid={pid}")
        except OSError as e:
            self.logger.warning(f"ROLLBACK to pid={pid} failed: {e}")

    def _submit(self, fn, *args):
        try:
            future = self._pool.submit(fn, *args)
        except RuntimeError:
            # pool already shut down
            self.logger.debug("Coordinator stopped, dropping replication task")
            return
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._task_done)

    def _task_done(self, future):
        with self._pending_lock:
            self._pending.discard(future)

    def wait_replication(self, timeout: float = 10.0) -> bool:
        """Block until every replication task submitted so far has run."""
        with self._pending_lock:
            pending = set(self._pending)
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    # ── Disconnects ──────────────────────────────────────────────────────────

    def handle_disconnect(self, channel: Channel):
        """
        Forget a dead connection: registry entries and queued requests.
        A grant held through this connection stays in place.
        """
        with self._nodes_lock:
            gone = [pid for pid, ch in self._nodes.items() if ch is channel]
            for pid in gone:
                del self._nodes[pid]
        with self.lock:
            before = len(self._queue)
            self._queue = [r for r in self._queue if r.channel is not channel]
            heapq.heapify(self._queue)
            purged = before - len(self._queue)
        for pid in gone:
            self._record('DISCONNECT', pid, self.clock.time)
        if gone or purged:
            self.logger.info(f"Disconnected pids={gone}, purged {purged} queued request(s)")

    # ── TCP server ───────────────────────────────────────────────────────────

    def bind(self, host: str = '0.0.0.0', port: int = config.COORD_PORT) -> int:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind((host, port))
        server.listen(100)
        self._server = server
        self.address = server.getsockname()[:2]
        self.logger.info(f"Coordinator listening on {self.address[0]}:{self.address[1]}")
        return self.address[1]

    def serve_forever(self):
        if self.grant_policy.check_interval:
            threading.Thread(target=self._watch_grant_expiry, daemon=True).start()
        while not self._stopped.is_set():
            try:
                conn, addr = self._server.accept()
            except OSError:
                if self._stopped.is_set():
                    break
                raise
            channel = Channel(conn, peer=f"{addr[0]}:{addr[1]}")
            self._channels.add(channel)
            threading.Thread(
                target=self._handle_connection,
                args=(channel,),
                daemon=True
            ).start()

    def serve(self, host: str = '0.0.0.0', port: int = config.COORD_PORT):
        self.bind(host, port)
        self.serve_forever()

    def start(self, host: str = '127.0.0.1', port: int = 0) -> int:
        """Bind and accept in a background thread. Returns the bound port."""
        bound = self.bind(host, port)
        threading.Thread(target=self.serve_forever, daemon=True).start()
        return bound

    def stop(self):
        self._stopped.set()
        if self._server is not None:
            try:
                self._server.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._server.close()
        for channel in list(self._channels):
            channel.close()
        self._pool.shutdown(wait=False)

    def _watch_grant_expiry(self):
        while not self._stopped.wait(self.grant_policy.check_interval):
            self.try_grant_next()

    def _handle_connection(self, channel: Channel):
        try:
            for msg in channel.messages():
                self.handle_message(msg, channel)
        except Exception as e:
            if not self._stopped.is_set():
                self.logger.error(f"Connection error ({channel.peer}): {e}")
        finally:
            self.handle_disconnect(channel)
            self._channels.discard(channel)
            channel.close()


def grant_policy_from_env():
    if config.LEASE_SECONDS:
        return LeaseGrantExpiry(float(config.LEASE_SECONDS))
    return NoGrantExpiry()


def main():
    config.configure_logging()

    coord = Coordinator(grant_policy=grant_policy_from_env())
    if hasattr(signal, 'SIGUSR1'):
        signal.signal(signal.SIGUSR1,
                      lambda signum, frame: coord.request_global_rollback('operator request'))
    coord.serve(port=config.COORD_PORT)


if __name__ == '__main__':
    main()
