#!/usr/bin/env python3
"""
Protocol tests without sockets.

FakeChannel records what the coordinator or a node writes. Bridge wires real
NodeAgents to a real Coordinator in memory: node → coordinator calls are
direct, coordinator → node deliveries go through a queue read by the node's
own listener thread, as they would over TCP.
"""
import json
import os
import queue
import threading
import time

import pytest

from shared.models import Message, MessageType
from shared.invariants import check_grant_order, check_single_holder, grant_sequence
from coordinator.coordinator import Coordinator, LeaseGrantExpiry
from node.node_agent import NodeAgent, NodeStatus
from node.replica_state import StateSnapshot


class FakeChannel:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.closed = False
        self.peer = "fake"

    def send(self, message):
        if self.fail or self.closed:
            raise ConnectionError("fake channel closed")
        self.sent.append(message)

    def messages(self):
        return iter(())

    def close(self):
        self.closed = True

    def of_type(self, msg_type):
        return [m for m in self.sent if m.type == msg_type]


class CoordinatorSide:
    """Coordinator's handle on a bridged node: writes land in the node's inbox."""

    def __init__(self):
        self.inbox = queue.Queue()
        self.closed = False

    def send(self, message):
        if self.closed:
            raise ConnectionError("bridge closed")
        self.inbox.put(message)


class Bridge:
    """The node's channel: sends go straight into Coordinator.handle_message."""

    def __init__(self, coordinator: Coordinator):
        self.coordinator = coordinator
        self.remote = CoordinatorSide()
        self.closed = False

    def send(self, message):
        if self.closed:
            raise ConnectionError("bridge closed")
        self.coordinator.handle_message(message, self.remote)

    def messages(self):
        while not self.closed:
            try:
                yield self.remote.inbox.get(timeout=0.05)
            except queue.Empty:
                continue

    def close(self):
        if not self.closed:
            self.closed = True
            self.remote.closed = True
            self.coordinator.handle_disconnect(self.remote)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def coordinator():
    coord = Coordinator(replication_delay_max=0.0)
    yield coord
    coord.stop()


def make_agent(pid, tmp_path, **kwargs):
    kwargs.setdefault('checkpoint_interval', 60.0)
    kwargs.setdefault('think_time', (0.01, 0.02))
    return NodeAgent(pid, checkpoint_dir=str(tmp_path), **kwargs)


# ─── Coordinator ─────────────────────────────────────────────────────────────

def test_grants_follow_lamport_then_pid_order(coordinator):
    """Requests (3,A) (3,B) (1,C) are served C, A, B."""
    holder = FakeChannel()
    coordinator.handle_message(Message.request(9, 0), holder)
    assert coordinator.holder == 9

    a, b, c = FakeChannel(), FakeChannel(), FakeChannel()
    coordinator.handle_message(Message.request(1, 3), a)
    coordinator.handle_message(Message.request(2, 3), b)
    coordinator.handle_message(Message.request(3, 1), c)
    assert coordinator.queue_snapshot() == [(1, 3), (3, 1), (3, 2)]

    for pid in (9, 3, 1, 2):
        coordinator.handle_message(Message.release(pid, 50), FakeChannel())

    grants = grant_sequence(coordinator.history)
    assert grants == [9, 3, 1, 2]
    assert check_grant_order([(3, 1), (3, 2), (1, 3)], grants[1:])
    assert check_single_holder(coordinator.history)
    for channel in (a, b, c):
        assert len(channel.of_type(MessageType.GRANT)) == 1


def test_every_message_advances_coordinator_clock(coordinator):
    coordinator.handle_message(Message.join(1, 40), FakeChannel())
    assert coordinator.clock.time == 41
    # types a node never sends are ignored, but still move the clock
    coordinator.handle_message(Message.grant(3), FakeChannel())
    assert coordinator.clock.time == 42
    assert not coordinator.busy


def test_grant_carries_fresh_clock(coordinator):
    channel = FakeChannel()
    coordinator.handle_message(Message.request(1, 7), channel)
    grant = channel.of_type(MessageType.GRANT)[0]
    # update(7) → 8, then increment for the grant
    assert grant.clock == 9
    assert grant.pid == 0


def test_failed_grant_moves_to_next_request(coordinator):
    coordinator.handle_message(Message.request(9, 0), FakeChannel())
    dead, live = FakeChannel(fail=True), FakeChannel()
    coordinator.handle_message(Message.request(1, 1), dead)
    coordinator.handle_message(Message.request(2, 2), live)

    coordinator.handle_message(Message.release(9, 10), FakeChannel())

    assert coordinator.busy
    assert coordinator.holder == 2
    assert len(live.of_type(MessageType.GRANT)) == 1
    assert coordinator.queue_snapshot() == []
    assert check_single_holder(coordinator.history)


def test_do_op_advances_counter_and_replicates(coordinator):
    n1, n2 = FakeChannel(), FakeChannel()
    coordinator.handle_message(Message.join(1, 1), n1)
    coordinator.handle_message(Message.join(2, 1), n2)
    coordinator.handle_message(Message.request(1, 2), n1)
    coordinator.handle_message(Message.do_op(1, 6, delta=5), n1)

    # canonical apply is +1 whatever delta the node sent
    assert coordinator.counter == 1
    assert coordinator.wait_replication(timeout=5.0)

    for channel in (n1, n2):
        states = channel.of_type(MessageType.STATE)
        assert len(states) == 1
        assert states[0].counter_or(-1) == 1
        assert states[0].clock > 6
    # the requester is not released by DO_OP alone
    assert coordinator.busy


def test_replication_failure_is_isolated(coordinator):
    dead, live = FakeChannel(fail=True), FakeChannel()
    coordinator.handle_message(Message.join(1, 1), dead)
    coordinator.handle_message(Message.join(2, 1), live)
    coordinator.handle_message(Message.do_op(1, 3), live)

    assert coordinator.wait_replication(timeout=5.0)
    assert live.of_type(MessageType.STATE)[0].counter_or(-1) == 1


def test_rollback_broadcast(coordinator):
    n1, n2 = FakeChannel(), FakeChannel()
    coordinator.handle_message(Message.join(1, 1), n1)
    coordinator.handle_message(Message.join(2, 1), n2)
    before = coordinator.clock.time

    coordinator.request_global_rollback('bad batch')
    assert coordinator.wait_replication(timeout=5.0)

    for channel in (n1, n2):
        rollback = channel.of_type(MessageType.ROLLBACK)[0]
        assert rollback.reason() == 'bad batch'
        assert rollback.clock == before + 1


def test_disconnect_purges_registry_and_queue(coordinator):
    holder, other = FakeChannel(), FakeChannel()
    coordinator.handle_message(Message.join(1, 1), holder)
    coordinator.handle_message(Message.join(2, 1), other)
    coordinator.handle_message(Message.request(1, 2), holder)
    coordinator.handle_message(Message.request(2, 2), other)
    assert coordinator.holder == 1

    coordinator.handle_disconnect(other)
    assert coordinator.registered_pids() == [1]
    assert coordinator.queue_snapshot() == []

    # the holder vanishing leaves the grant in place
    coordinator.handle_disconnect(holder)
    assert coordinator.registered_pids() == []
    assert coordinator.busy
    assert coordinator.holder == 1


def test_release_from_non_holder_ignored(coordinator):
    coordinator.handle_message(Message.request(1, 1), FakeChannel())
    coordinator.handle_message(Message.release(2, 5), FakeChannel())
    assert coordinator.busy
    assert coordinator.holder == 1


def test_lease_expiry_revokes_stuck_grant():
    coord = Coordinator(replication_delay_max=0.0, grant_policy=LeaseGrantExpiry(0.05))
    try:
        coord.handle_message(Message.request(3, 1), FakeChannel())
        time.sleep(0.1)
        waiting = FakeChannel()
        coord.handle_message(Message.request(1, 2), waiting)

        assert coord.holder == 1
        assert len(waiting.of_type(MessageType.GRANT)) == 1
        assert ('EXPIRE', 3) in [(e, p) for e, p, _c in coord.history]
        assert check_single_holder(coord.history)
    finally:
        coord.stop()


def test_lease_policy_validation():
    with pytest.raises(ValueError):
        LeaseGrantExpiry(0)


# ─── Node agent ──────────────────────────────────────────────────────────────

def test_node_critical_section_cycle(tmp_path):
    agent = make_agent(1, tmp_path)
    agent.channel = FakeChannel()

    assert agent.request_cs()
    assert agent.status == NodeStatus.WAITING_GRANT
    assert not agent.request_cs()

    agent.handle_message(Message.grant(5))
    assert agent.status == NodeStatus.WAITING_STATE_CONFIRM
    do_op = agent.channel.sent[-1]
    assert do_op.type == MessageType.DO_OP
    assert do_op.payload == {'delta': 1}
    assert do_op.clock == 7          # update(5) → 6, then increment
    assert agent.state.counter == 1  # tentative local apply
    assert os.path.exists(agent.state.checkpoint_path)

    agent.handle_message(Message.state(counter=1, clock=9))
    assert agent.status == NodeStatus.IDLE
    assert agent.channel.sent[-1].type == MessageType.RELEASE
    assert (agent.state.counter, agent.state.last_applied) == (1, 9)
    assert agent.ops_completed == 1


def test_stale_state_still_releases(tmp_path):
    """lastApplied = 10, STATE clock 8: counter unchanged, RELEASE still sent."""
    agent = make_agent(1, tmp_path)
    agent.channel = FakeChannel()
    agent.state.apply(3, 10)

    agent.request_cs()
    agent.handle_message(Message.grant(2))
    counter_before = agent.state.counter
    assert agent.state.last_applied == 10

    agent.handle_message(Message.state(counter=99, clock=8))
    assert agent.state.counter == counter_before
    assert agent.state.last_applied == 10
    assert agent.channel.sent[-1].type == MessageType.RELEASE
    assert agent.status == NodeStatus.IDLE


def test_idle_node_applies_state_without_release(tmp_path):
    agent = make_agent(2, tmp_path)
    agent.channel = FakeChannel()

    agent.handle_message(Message.state(counter=4, clock=12))
    assert (agent.state.counter, agent.state.last_applied) == (4, 12)
    assert agent.channel.sent == []
    assert agent.clock.time == 13


def test_malformed_state_payload_keeps_counter(tmp_path):
    agent = make_agent(2, tmp_path)
    agent.channel = FakeChannel()
    agent.state.apply(6, 3)

    agent.handle_message(Message(MessageType.STATE, 0, 20, {'counter': 'six'}))
    assert (agent.state.counter, agent.state.last_applied) == (6, 20)


def test_rollback_restores_durable_checkpoint(tmp_path):
    agent = make_agent(1, tmp_path)
    agent.channel = FakeChannel()
    agent.state.apply(5, 7)
    agent.state.save_checkpoint()
    agent.state.apply(9, 12)

    agent.handle_message(Message.rollback('test', 30))
    assert (agent.state.counter, agent.state.last_applied) == (5, 7)
    assert agent.channel.sent == []


def test_delay_simulation_slows_critical_section(tmp_path):
    agent = make_agent(1, tmp_path, simulate_delay=True, cs_delay=0.2)
    agent.channel = FakeChannel()
    agent.request_cs()

    started = time.monotonic()
    agent.handle_message(Message.grant(2))
    assert time.monotonic() - started >= 0.2
    assert agent.channel.sent[-1].type == MessageType.DO_OP


def test_crash_writes_pre_image_and_sends_nothing(tmp_path):
    terminated = []
    agent = make_agent(3, tmp_path, simulate_crash=True, terminate=terminated.append)
    agent.channel = FakeChannel()
    agent.state.apply(4, 11)

    agent.request_cs()
    agent.handle_message(Message.grant(20))

    assert terminated == [agent]
    assert [m.type for m in agent.channel.sent] == [MessageType.REQUEST]
    with open(tmp_path / 'node-3-precrash.json') as f:
        assert json.load(f) == {'preCounter': 4, 'preLamport': 11}


def test_pid_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        make_agent(0, tmp_path)


# ─── Agents and coordinator together ─────────────────────────────────────────

def test_two_node_end_to_end(coordinator, tmp_path):
    """
    Both nodes JOIN, REQUEST with clocks 2 and 3; node 1 goes first,
    the counter reaches 2 and both replicas converge on the final STATE.
    """
    node1, node2 = make_agent(1, tmp_path), make_agent(2, tmp_path)
    node1.start(channel=Bridge(coordinator))
    node2.start(channel=Bridge(coordinator))
    assert coordinator.registered_pids() == [1, 2]

    # keep the section busy until both requests are queued
    blocker = FakeChannel()
    coordinator.handle_message(Message.request(99, 0), blocker)

    node2.clock.increment()  # one local event, so node 2 requests at clock 3
    node1.request_cs()
    node2.request_cs()
    assert coordinator.queue_snapshot() == [(2, 1), (3, 2)]

    coordinator.handle_message(Message.release(99, 0), blocker)

    try:
        assert wait_for(lambda: coordinator.counter == 2
                        and node1.status == NodeStatus.IDLE
                        and node2.status == NodeStatus.IDLE)
        assert coordinator.wait_replication(timeout=5.0)
        final_ts = [c for e, _p, c in coordinator.history if e == 'DO_OP'][-1]
        assert wait_for(lambda: node1.state.snapshot() == node2.state.snapshot() == StateSnapshot(2, final_ts))

        assert grant_sequence(coordinator.history) == [99, 1, 2]
        assert check_single_holder(coordinator.history)
        for node in (node1, node2):
            assert (node.state.counter, node.state.last_applied) == (2, final_ts)
        assert not coordinator.busy
    finally:
        node1.stop()
        node2.stop()


def test_listener_loss_stops_agent(tmp_path):
    coord = Coordinator(replication_delay_max=0.0)
    agent = make_agent(1, tmp_path)
    bridge = Bridge(coord)
    agent.start(channel=bridge)
    try:
        bridge.closed = True  # the stream ends under the listener
        assert wait_for(lambda: agent.stopped)
        assert agent.status == NodeStatus.STOPPED
        assert not agent.request_cs()
    finally:
        agent.stop()
        coord.stop()


def test_concurrent_requests_never_double_grant(coordinator, tmp_path):
    agents = [make_agent(pid, tmp_path) for pid in (1, 2, 3, 4)]
    for agent in agents:
        agent.start(channel=Bridge(coordinator))

    threads = [threading.Thread(target=a.run, kwargs={'max_requests': 5}) for a in agents]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        assert wait_for(lambda: coordinator.counter == 20, timeout=15)
        assert check_single_holder(coordinator.history)
        assert coordinator.wait_replication(timeout=5.0)
        assert wait_for(lambda: {a.state.counter for a in agents} == {20}
                        and len({a.state.snapshot() for a in agents}) == 1)
    finally:
        for agent in agents:
            agent.stop()


def test_periodic_checkpoint_persists_memory_state(coordinator, tmp_path):
    agent = make_agent(1, tmp_path, checkpoint_interval=0.05)
    agent.start(channel=Bridge(coordinator))
    try:
        def on_disk():
            try:
                with open(agent.state.checkpoint_path) as f:
                    return json.load(f)
            except (OSError, ValueError):
                return None

        # applied in memory only, no explicit save
        agent.state.apply(4, 9)
        assert wait_for(lambda: on_disk() == {'counter': 4, 'lamport': 9})

        agent.state.apply(6, 15)
        assert wait_for(lambda: on_disk() == {'counter': 6, 'lamport': 15})
    finally:
        agent.stop()


class ScriptedChannel(FakeChannel):
    """Inbound side replays a fixed list of messages, then EOF."""

    def __init__(self, script):
        super().__init__()
        self.script = script

    def messages(self):
        return iter(self.script)


class FailingDoOpCoordinator(Coordinator):
    def handle_do_op(self, msg):
        raise RuntimeError("handler blew up")


def test_handler_exception_tears_down_only_that_connection():
    coord = FailingDoOpCoordinator(replication_delay_max=0.0)
    try:
        holder = FakeChannel()
        coord.handle_message(Message.request(9, 0), holder)

        broken = ScriptedChannel([Message.join(1, 1), Message.request(1, 2), Message.do_op(1, 3)])
        coord._handle_connection(broken)

        assert broken.closed
        assert coord.registered_pids() == []
        assert coord.queue_snapshot() == []
        assert coord.holder == 9

        survivor = FakeChannel()
        coord.handle_message(Message.join(2, 1), survivor)
        coord.handle_message(Message.request(2, 2), survivor)
        coord.handle_message(Message.release(9, 5), holder)
        assert coord.holder == 2
        assert len(survivor.of_type(MessageType.GRANT)) == 1
        assert grant_sequence(coord.history) == [9, 2]
    finally:
        coord.stop()


def test_replication_sleeps_overlap_across_targets():
    coord = Coordinator(replication_delay_max=0.3, max_replication_workers=8)
    try:
        channels = [FakeChannel() for _ in range(6)]
        for pid, channel in enumerate(channels, start=1):
            coord.handle_message(Message.join(pid, 1), channel)

        started = time.monotonic()
        coord.broadcast_state(1, 10)
        assert coord.wait_replication(timeout=5.0)
        # six sequential sleeps would average 0.9s
        assert time.monotonic() - started < 0.6
        assert all(len(c.of_type(MessageType.STATE)) == 1 for c in channels)
    finally:
        coord.stop()
