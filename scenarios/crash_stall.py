"""
Crash scenario: a node dies while holding the critical section.

Without a lease the coordinator keeps the grant forever and the counter
stops moving. With LeaseGrantExpiry the grant is revoked and the surviving
nodes carry on.
"""
import os
import random
import time
import numpy as np
from typing import Dict, List, Optional

from coordinator.coordinator import LeaseGrantExpiry, NoGrantExpiry
from node.replica_state import crash_record_path_for
from orchestrator.orchestrator import LocalCluster, wait_until


class CrashStallScenario:
    """
    Configuration:
    - n = 3 nodes, node `crash_pid` crashes on its first grant
    - observation window `duration` seconds after the crash
    """

    def __init__(self, n_nodes: int = 3, crash_pid: int = 3,
                 duration: float = 1.5, sample_interval: float = 0.05):
        self.n_nodes = n_nodes
        self.crash_pid = crash_pid
        self.duration = duration
        self.sample_interval = sample_interval

    def run_single_replication(self, lease: Optional[float], seed: int) -> Dict:
        random.seed(seed)
        policy = LeaseGrantExpiry(lease) if lease else NoGrantExpiry()

        with LocalCluster(n_nodes=self.n_nodes,
                          replication_delay_max=0.02,
                          think_time=(0.01, 0.05),
                          cs_delay=0.0,
                          grant_policy=policy,
                          crash_pids={self.crash_pid}) as cluster:
            record = crash_record_path_for(self.crash_pid, cluster.checkpoint_dir)
            cluster.start()
            crashed = wait_until(lambda: os.path.exists(record), timeout=10.0)
            counter_at_crash = cluster.coordinator.counter

            times: List[float] = []
            counters: List[int] = []
            t0 = time.monotonic()
            while time.monotonic() - t0 < self.duration:
                times.append(time.monotonic() - t0)
                counters.append(cluster.coordinator.counter)
                time.sleep(self.sample_interval)

            busy_at_end = cluster.coordinator.busy
            holder_at_end = cluster.coordinator.holder
            counter_at_end = cluster.coordinator.counter
            single_holder = cluster.single_holder()

        progress = np.diff(np.array(counters, dtype=float)) if len(counters) > 1 else np.array([0.0])
        return {
            'crashed': crashed,
            'counter_at_crash': counter_at_crash,
            'counter_at_end': counter_at_end,
            'ops_after_crash': counter_at_end - counter_at_crash,
            'stalled': counter_at_end == counter_at_crash,
            'busy_at_end': busy_at_end,
            'crashed_node_holds_grant': holder_at_end == self.crash_pid,
            'throughput_after_crash': float(np.sum(progress)) / self.duration,
            'single_holder': single_holder,
            'trace': {'t': times, 'counter': counters},
        }

    def run_experiment(self, leases: List[Optional[float]], n_replications: int = 3) -> Dict:
        all_results = {}
        for lease in leases:
            label = f"lease={lease}" if lease else 'no-lease'
            print(f"Running {label}...")
            results = [self.run_single_replication(lease, seed=r) for r in range(n_replications)]
            all_results[label] = self._aggregate_results(results)
        return all_results

    def _aggregate_results(self, results: List[Dict]) -> Dict:
        aggregated = {}
        for metric in ['ops_after_crash', 'throughput_after_crash']:
            values = [r[metric] for r in results]
            aggregated[metric] = {'mean': float(np.mean(values)), 'std': float(np.std(values))}
        for flag in ['crashed', 'stalled', 'busy_at_end', 'crashed_node_holds_grant', 'single_holder']:
            aggregated[flag] = float(np.mean([r[flag] for r in results]))
        aggregated['trace'] = results[0]['trace'] if results else {}
        return aggregated


if __name__ == '__main__':
    scenario = CrashStallScenario()
    results = scenario.run_experiment([None, 0.3], n_replications=2)
    for label, r in results.items():
        print(f"  {label}: stalled={r['stalled']:.2f}, ops after crash = "
              f"{r['ops_after_crash']['mean']:.1f} ± {r['ops_after_crash']['std']:.1f}")
