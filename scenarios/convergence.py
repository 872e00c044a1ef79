"""
Convergence scenario: how far behind the canonical counter do replicas run?

Tests:
- every replica converges to the coordinator's counter once traffic stops
- staleness grows with the simulated replication delay
- at most one grant is ever outstanding

Staleness of node i at sample time t = max(0, coordinator.counter(t) - node_i.counter(t)).
A holder running one ahead on its tentative increment counts as 0.
"""
import random
import time
import numpy as np
from typing import Dict, List

from orchestrator.orchestrator import LocalCluster
from shared.invariants import staleness


class ConvergenceScenario:
    """
    Configuration:
    - n = 3 nodes
    - duration = 2 s of traffic per replication
    - replication delay upper bound varied (seconds)
    """

    def __init__(self, n_nodes: int = 3, duration: float = 2.0,
                 sample_interval: float = 0.02,
                 think_time=(0.01, 0.05)):
        self.n_nodes = n_nodes
        self.duration = duration
        self.sample_interval = sample_interval
        self.think_time = think_time

    def run_single_replication(self, replication_delay_max: float, seed: int) -> Dict:
        random.seed(seed)

        times: List[float] = []
        samples: List[List[int]] = []

        with LocalCluster(n_nodes=self.n_nodes,
                          replication_delay_max=replication_delay_max,
                          think_time=self.think_time,
                          cs_delay=0.0) as cluster:
            cluster.start()
            t0 = time.monotonic()
            while time.monotonic() - t0 < self.duration:
                lag = staleness(cluster.coordinator.counter, cluster.node_states())
                times.append(time.monotonic() - t0)
                samples.append([lag.get(pid, 0) for pid in range(1, self.n_nodes + 1)])
                time.sleep(self.sample_interval)

            cluster.stop_requests()
            quiescent = cluster.wait_quiescent(timeout=10.0 + 4 * replication_delay_max)
            ops = cluster.coordinator.counter
            converged = cluster.converged()
            single_holder = cluster.single_holder()

        lags = np.array(samples, dtype=float)
        return {
            'ops': ops,
            'throughput': ops / self.duration,
            'mean_staleness': float(np.mean(lags)) if lags.size else 0.0,
            'max_staleness': float(np.max(lags)) if lags.size else 0.0,
            'p95_staleness': float(np.percentile(lags, 95)) if lags.size else 0.0,
            'stale_fraction': float(np.mean(lags > 0)) if lags.size else 0.0,
            'converged': bool(quiescent and converged),
            'single_holder': single_holder,
            'trace': {
                't': times,
                'staleness': lags.T.tolist(),
            },
        }

    def run_experiment(self, delay_values: List[float], n_replications: int = 5) -> Dict:
        """
        Run every replication delay bound n_replications times.

        Returns:
            Dictionary keyed by delay bound, aggregated mean ± std, plus the
            staleness trace of the first replication.
        """
        all_results = {d: [] for d in delay_values}

        for delay in delay_values:
            print(f"Running replication delay <= {delay}s...")
            for replication in range(n_replications):
                result = self.run_single_replication(delay, seed=replication)
                all_results[delay].append(result)

        return {d: self._aggregate_results(results) for d, results in all_results.items()}

    def _aggregate_results(self, results: List[Dict]) -> Dict:
        metrics = ['ops', 'throughput', 'mean_staleness', 'max_staleness',
                   'p95_staleness', 'stale_fraction']
        aggregated = {}
        for metric in metrics:
            values = [r[metric] for r in results]
            aggregated[metric] = {
                'mean': float(np.mean(values)),
                'std': float(np.std(values)),
            }
        aggregated['converged'] = all(r['converged'] for r in results)
        aggregated['single_holder'] = all(r['single_holder'] for r in results)
        aggregated['trace'] = results[0]['trace'] if results else {}
        return aggregated

    def analyze_staleness(self, results: Dict) -> Dict:
        """
        Linear regression of mean staleness against the delay bound:
        staleness = a * delay + b
        """
        from scipy import stats

        delays = sorted(results)
        staleness = [results[d]['mean_staleness']['mean'] for d in delays]
        if len(delays) < 2:
            return {'slope': 0.0, 'intercept': staleness[0] if staleness else 0.0,
                    'r_squared': 0.0, 'equation': 'n/a'}

        fit = stats.linregress(delays, staleness)
        return {
            'slope': float(fit.slope),
            'intercept': float(fit.intercept),
            'r_squared': float(fit.rvalue ** 2),
            'equation': f"staleness = {fit.slope:.2f} * delay + {fit.intercept:.2f}",
        }


if __name__ == '__main__':
    scenario = ConvergenceScenario()
    delays = [0.0, 0.05, 0.2]
    results = scenario.run_experiment(delays, n_replications=3)

    print("\n" + "=" * 80)
    print("CONVERGENCE: STALENESS vs REPLICATION DELAY")
    print("=" * 80)
    for d in delays:
        r = results[d]
        print(f"  delay<={d}s: staleness = {r['mean_staleness']['mean']:.3f} ± "
              f"{r['mean_staleness']['std']:.3f}, converged={r['converged']}")
