#!/usr/bin/env python3
"""
Orchestrator — runs a coordinator and N node agents inside one process.

Used by the evaluation scenarios and the socket-level tests: every component
talks over real localhost TCP, only process boundaries are replaced by
threads. A simulated crash closes the node's connection instead of killing
the interpreter.
"""
import os
import shutil
import socket
import tempfile
import threading
import time
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from shared import config
from shared.invariants import check_convergence, check_single_holder
from coordinator.coordinator import Coordinator, NoGrantExpiry
from node.node_agent import NodeAgent, NodeStatus

logger = logging.getLogger('Orchestrator')


def wait_for_service(host: str, port: int, retries: int = 30, delay: float = 1.0):
    """Block until the endpoint accepts TCP connections."""
    for attempt in range(retries):
        try:
            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            s.settimeout(2.0)
            s.connect((host, port))
            s.close()
            return
        except OSError:
            if attempt == retries - 1:
                raise RuntimeError(f"Service {host}:{port} not reachable after {retries} attempts")
            time.sleep(delay)


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0,
               interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class LocalCluster:
    """
    One coordinator plus nodes 1..n_nodes on an ephemeral localhost port.

    crash_pids / delay_pids select which nodes get the crash or slow-operation
    fault. checkpoint_dir defaults to a private temporary directory that is
    removed on stop().
    """

    def __init__(self, n_nodes: int = 3,
                 checkpoint_dir: str = None,
                 replication_delay_max: float = 0.05,
                 think_time: Tuple[float, float] = (0.02, 0.08),
                 cs_delay: float = 0.1,
                 checkpoint_interval: float = 0.5,
                 grant_policy=None,
                 crash_pids: Iterable[int] = (),
                 delay_pids: Iterable[int] = ()):
        self.n_nodes = n_nodes
        self._own_dir = checkpoint_dir is None
        self.checkpoint_dir = checkpoint_dir or tempfile.mkdtemp(prefix='lamport-mutex-')
        self.think_time = think_time
        self.cs_delay = cs_delay
        self.checkpoint_interval = checkpoint_interval
        self.crash_pids = set(crash_pids)
        self.delay_pids = set(delay_pids)

        self.coordinator = Coordinator(replication_delay_max=replication_delay_max,
                                       grant_policy=grant_policy or NoGrantExpiry())
        self.agents: Dict[int, NodeAgent] = {}
        self.port: Optional[int] = None
        self._requests_done = threading.Event()
        self._request_threads: List[threading.Thread] = []

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self, run_requests: bool = True, max_requests: int = None):
        self.port = self.coordinator.start('127.0.0.1', 0)
        wait_for_service('127.0.0.1', self.port, retries=20, delay=0.05)
        for pid in range(1, self.n_nodes + 1):
            agent = self.add_node(pid)
            if run_requests:
                self.run_requests(agent, max_requests)
        return self

    def add_node(self, pid: int) -> NodeAgent:
        agent = NodeAgent(
            pid=pid,
            host='127.0.0.1',
            port=self.port,
            checkpoint_dir=self.checkpoint_dir,
            simulate_delay=pid in self.delay_pids,
            simulate_crash=pid in self.crash_pids,
            cs_delay=self.cs_delay,
            think_time=self.think_time,
            checkpoint_interval=self.checkpoint_interval,
            terminate=NodeAgent.abort,
        )
        agent.start()
        self.agents[pid] = agent
        wait_until(lambda: pid in self.coordinator.registered_pids(), timeout=5.0)
        return agent

    def run_requests(self, agent: NodeAgent, max_requests: int = None):
        t = threading.Thread(target=agent.run,
                             kwargs={'max_requests': max_requests, 'until': self._requests_done},
                             name=f"requests-{agent.pid}", daemon=True)
        t.start()
        self._request_threads.append(t)

    def stop_requests(self, timeout: float = 5.0):
        self._requests_done.set()
        for t in self._request_threads:
            t.join(timeout=timeout)

    def stop(self):
        self._requests_done.set()
        for agent in self.agents.values():
            agent.stop()
        self.coordinator.stop()
        if self._own_dir:
            shutil.rmtree(self.checkpoint_dir, ignore_errors=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    # ── Observation ──────────────────────────────────────────────────────────

    def live_agents(self) -> List[NodeAgent]:
        return [a for a in self.agents.values() if not a.stopped]

    def node_states(self) -> Dict[int, Tuple[int, int]]:
        """pid -> (counter, last applied timestamp) for every live node."""
        states = {}
        for agent in self.live_agents():
            snap = agent.state.snapshot()
            states[agent.pid] = (snap.counter, snap.lamport)
        return states

    def idle(self) -> bool:
        coord = self.coordinator
        return (not coord.busy and not coord.queue_snapshot()
                and all(a.status == NodeStatus.IDLE for a in self.live_agents()))

    def wait_quiescent(self, timeout: float = 10.0) -> bool:
        """No grant outstanding, nothing queued, every replication delivered."""
        if not wait_until(self.idle, timeout=timeout):
            return False
        if not self.coordinator.wait_replication(timeout=timeout):
            return False
        return wait_until(self.converged, timeout=timeout)

    def converged(self) -> bool:
        return check_convergence(self.coordinator.counter, self.node_states())

    def single_holder(self) -> bool:
        return check_single_holder(list(self.coordinator.history))


def main():
    config.configure_logging()
    n_nodes = int(os.environ.get('N_NODES', 3))
    duration = float(os.environ.get('DURATION', 10.0))

    with LocalCluster(n_nodes=n_nodes,
                      replication_delay_max=config.REPLICATION_DELAY_MAX,
                      think_time=(config.THINK_TIME_MIN, config.THINK_TIME_MAX),
                      cs_delay=config.CS_DELAY,
                      checkpoint_interval=config.CHECKPOINT_INTERVAL) as cluster:
        cluster.start()
        logger.info(f"Cluster of {n_nodes} nodes on port {cluster.port}, running {duration}s")
        time.sleep(duration)
        cluster.stop_requests()
        quiescent = cluster.wait_quiescent(timeout=max(30.0, 4 * config.REPLICATION_DELAY_MAX))

        logger.info(f"Canonical counter: {cluster.coordinator.counter}")
        for pid, (counter, ts) in sorted(cluster.node_states().items()):
            logger.info(f"  node {pid}: counter={counter} lamport={ts}")
        logger.info(f"Quiescent={quiescent} converged={cluster.converged()} "
                    f"single_holder={cluster.single_holder()}")


if __name__ == '__main__':
    main()
