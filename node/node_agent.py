#!/usr/bin/env python3
"""
Node Agent — one participant competing for the shared counter.

Lifecycle:
  IDLE → REQUESTING → WAITING_GRANT → IN_CRITICAL_SECTION
       → WAITING_STATE_CONFIRM → IDLE

ROLLBACK may arrive in any state and restores the last durable checkpoint.
Two optional faults can be injected:
  simulate_delay  → sleep cs_delay seconds inside the critical section
  simulate_crash  → write the pre-image and die inside the critical section,
                    without DO_OP or RELEASE
"""
import os
import random
import threading
import logging
from enum import Enum
from typing import Callable, Optional, Tuple

from shared import config
from shared.clock import LogicalClock
from shared.models import Message, MessageType
from shared.transport import Channel, connect
from node.replica_state import ReplicaState


class NodeStatus(str, Enum):
    IDLE = 'IDLE'
    REQUESTING = 'REQUESTING'
    WAITING_GRANT = 'WAITING_GRANT'
    IN_CRITICAL_SECTION = 'IN_CRITICAL_SECTION'
    WAITING_STATE_CONFIRM = 'WAITING_STATE_CONFIRM'
    STOPPED = 'STOPPED'


def hard_exit(agent: 'NodeAgent'):
    """Terminate the whole process immediately, as a real crash would."""
    logging.shutdown()
    os._exit(1)


class NodeAgent:
    def __init__(self, pid: int,
                 host: str = config.COORD_HOST,
                 port: int = config.COORD_PORT,
                 checkpoint_dir: str = config.CHECKPOINT_DIR,
                 simulate_delay: bool = False,
                 simulate_crash: bool = False,
                 cs_delay: float = config.CS_DELAY,
                 think_time: Tuple[float, float] = (config.THINK_TIME_MIN, config.THINK_TIME_MAX),
                 checkpoint_interval: float = config.CHECKPOINT_INTERVAL,
                 terminate: Callable[['NodeAgent'], None] = hard_exit):
        if pid <= 0:
            raise ValueError("node pid must be a positive integer (0 is the coordinator)")
        self.pid = pid
        self.host = host
        self.port = port
        self.simulate_delay = simulate_delay
        self.simulate_crash = simulate_crash
        self.cs_delay = cs_delay
        self.think_time = think_time
        self.checkpoint_interval = checkpoint_interval
        self.terminate = terminate

        self.logger = logging.getLogger(f"Node-{pid}")
        self.clock = LogicalClock()
        self.state = ReplicaState(pid, checkpoint_dir)
        self.channel: Optional[Channel] = None

        self._status = NodeStatus.IDLE
        self._status_lock = threading.Lock()
        self._stopped = threading.Event()
        self.ops_completed = 0

    @property
    def status(self) -> NodeStatus:
        with self._status_lock:
            return self._status

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    # ── Startup / shutdown ───────────────────────────────────────────────────

    def start(self, channel: Channel = None):
        """Connect, JOIN, then start the listener and the checkpoint task."""
        self.channel = channel or connect(self.host, self.port,
                                          retries=config.CONNECT_RETRIES,
                                          delay=config.CONNECT_DELAY)
        join = Message.join(self.pid, self.clock.increment())
        self.channel.send(join)
        self.logger.info(f"JOIN sent (clock={join.clock})")

        threading.Thread(target=self._listen, name=f"listener-{self.pid}", daemon=True).start()
        threading.Thread(target=self._checkpoint_loop, name=f"checkpoint-{self.pid}", daemon=True).start()

    def run(self, max_requests: int = None, until: threading.Event = None):
        """
        Request loop: think, then ask for the critical section when idle.
        Ends when the agent stops, after max_requests, or once `until` is set.
        """
        sent = 0
        while not self._stopped.wait(random.uniform(*self.think_time)):
            if until is not None and until.is_set():
                break
            if self.request_cs():
                sent += 1
                if max_requests is not None and sent >= max_requests:
                    break

    def stop(self):
        """Graceful shutdown: final checkpoint, then close the connection."""
        if self._stopped.is_set():
            return
        self._stopped.set()
        with self._status_lock:
            self._status = NodeStatus.STOPPED
        self.state.save_checkpoint()
        if self.channel is not None:
            self.channel.close()

    def abort(self):
        """Drop everything without a word to the coordinator."""
        self._stopped.set()
        with self._status_lock:
            self._status = NodeStatus.STOPPED
        if self.channel is not None:
            self.channel.close()

    # ── Outbound ─────────────────────────────────────────────────────────────

    def _send(self, message: Message) -> bool:
        try:
            self.channel.send(message)
            return True
        except OSError as e:
            self.logger.error(f"Failed to send {message.type.value}: {e}")
            return False

    def request_cs(self) -> bool:
        with self._status_lock:
            if self._status != NodeStatus.IDLE:
                return False
            self._status = NodeStatus.REQUESTING
            request = Message.request(self.pid, self.clock.increment())
            self._status = NodeStatus.WAITING_GRANT
            if not self._send(request):
                self._status = NodeStatus.IDLE
                return False
        self.logger.info(f"REQUEST sent (clock={request.clock})")
        return True

    # ── Inbound ──────────────────────────────────────────────────────────────

    def handle_message(self, msg: Message):
        self.clock.update(msg.clock)

        if msg.type == MessageType.GRANT:
            self.on_grant(msg)
        elif msg.type == MessageType.STATE:
            self.on_state(msg)
        elif msg.type == MessageType.ROLLBACK:
            self.on_rollback(msg)
        else:
            self.logger.debug(f"Ignoring {msg.type.value} from pid={msg.pid}")

    def on_grant(self, msg: Message):
        with self._status_lock:
            if self._status != NodeStatus.WAITING_GRANT:
                self.logger.warning(f"GRANT received in state {self._status.value}")
            self._status = NodeStatus.IN_CRITICAL_SECTION
        self.logger.info(f"GRANT received, entering critical section (clock={self.clock.time})")
        self.critical_operation()

    def critical_operation(self):
        pre_image = self.state.snapshot()

        if self.simulate_delay:
            self.logger.info(f"Simulating slow operation ({self.cs_delay}s)")
            if self._stopped.wait(self.cs_delay):
                return

        if self.simulate_crash:
            self.state.write_crash_record(pre_image)
            self.logger.error(f"Simulated crash inside critical section "
                              f"(pre-image counter={pre_image.counter} lamport={pre_image.lamport})")
            self.terminate(self)
            return

        with self._status_lock:
            timestamp = self.clock.increment()
            local = self.state.apply_local_increment(timestamp)
            self.state.save_checkpoint()
            self._status = NodeStatus.WAITING_STATE_CONFIRM
            sent = self._send(Message.do_op(self.pid, timestamp))
        if sent:
            self.logger.info(f"DO_OP sent (local counter={local.counter}, clock={timestamp})")

    def on_state(self, msg: Message):
        counter = msg.counter_or(self.state.counter)
        if self.state.apply(counter, msg.clock):
            self.state.save_checkpoint()
            self.logger.info(f"STATE applied: counter={counter} (ts={msg.clock})")
        else:
            self.logger.info(f"STATE discarded as stale: ts={msg.clock} <= {self.state.last_applied}")

        with self._status_lock:
            if self._status != NodeStatus.WAITING_STATE_CONFIRM:
                return
            self._status = NodeStatus.IDLE
            self.ops_completed += 1
            release = Message.release(self.pid, self.clock.increment())
            sent = self._send(release)
        if sent:
            self.logger.info(f"RELEASE sent (clock={release.clock})")

    def on_rollback(self, msg: Message):
        restored = self.state.restore_from_checkpoint()
        self.logger.warning(f"ROLLBACK ({msg.reason()}): restored counter={restored.counter} "
                            f"lamport={restored.lamport}")

    # ── Background tasks ─────────────────────────────────────────────────────

    def _listen(self):
        try:
            for msg in self.channel.messages():
                self.handle_message(msg)
            if not self._stopped.is_set():
                self.logger.error("Coordinator closed the connection")
        except Exception as e:
            if not self._stopped.is_set():
                self.logger.error(f"Listener error: {e}")
        finally:
            if not self._stopped.is_set():
                # cannot participate without the inbound channel
                self.abort()

    def _checkpoint_loop(self):
        while not self._stopped.wait(self.checkpoint_interval):
            self.state.save_checkpoint()


if __name__ == '__main__':
    config.configure_logging()
    pid = int(os.environ.get('NODE_PID', 1))

    agent = NodeAgent(
        pid=pid,
        simulate_delay=config.env_flag('SIMULATE_DELAY'),
        simulate_crash=config.env_flag('SIMULATE_CRASH'),
    )
    agent.start()
    try:
        agent.run()
    except KeyboardInterrupt:
        pass
    finally:
        agent.stop()
