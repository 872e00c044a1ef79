#!/usr/bin/env python3
"""
Main evaluation script for the Lamport-ordered mutual exclusion cluster.

Runs the three scenarios against an in-process cluster and saves JSON
results for generate_figures.py.
"""
import json
import time
from pathlib import Path

from shared import config
from scenarios import ConvergenceScenario, CrashStallScenario, RollbackScenario


def run_all_scenarios(output_dir: str = "results", n_replications: int = 3):
    """Run all evaluation scenarios and save results."""
    Path(output_dir).mkdir(parents=True, exist_ok=True)

    print("=" * 80)
    print("LAMPORT MUTUAL EXCLUSION EVALUATION")
    print("=" * 80)
    print(f"\nResults will be saved to: {output_dir}/")

    # -------------------------------------------------------------------------
    # SCENARIO 1: Replica staleness vs replication delay
    # -------------------------------------------------------------------------
    print("\n" + "=" * 80)
    print("SCENARIO 1: STALENESS vs REPLICATION DELAY")
    print("=" * 80)

    start_time = time.time()
    convergence = ConvergenceScenario()
    delays = [0.0, 0.05, 0.1, 0.2]
    results1 = convergence.run_experiment(delays, n_replications=n_replications)

    print(f"\n{'Delay (s)':<12} {'Ops/s':<14} {'Staleness':<16} {'p95':<8} {'Converged':<10}")
    print("-" * 62)
    for d in delays:
        r = results1[d]
        print(f"{d:<12} {r['throughput']['mean']:<14.1f} "
              f"{r['mean_staleness']['mean']:.3f}±{r['mean_staleness']['std']:.3f}    "
              f"{r['p95_staleness']['mean']:<8.1f} {str(r['converged']):<10}")

    fit = convergence.analyze_staleness(results1)
    print(f"\nLinear regression: {fit['equation']}  (R² = {fit['r_squared']:.4f})")
    print(f"Completed in {time.time() - start_time:.1f}s")

    with open(f"{output_dir}/convergence_results.json", 'w') as f:
        json.dump({'by_delay': {str(d): r for d, r in results1.items()}, 'fit': fit}, f, indent=2)

    # -------------------------------------------------------------------------
    # SCENARIO 2: Crash inside the critical section
    # -------------------------------------------------------------------------
    print("\n" + "=" * 80)
    print("SCENARIO 2: CRASH INSIDE THE CRITICAL SECTION")
    print("=" * 80)

    start_time = time.time()
    results2 = CrashStallScenario().run_experiment([None, 0.3], n_replications=n_replications)

    print(f"\n{'Policy':<14} {'Stalled':<10} {'Ops after crash':<18}")
    print("-" * 42)
    for label, r in results2.items():
        print(f"{label:<14} {r['stalled']:<10.2f} "
              f"{r['ops_after_crash']['mean']:.1f}±{r['ops_after_crash']['std']:.1f}")
    print(f"Completed in {time.time() - start_time:.1f}s")

    with open(f"{output_dir}/crash_results.json", 'w') as f:
        json.dump(results2, f, indent=2)

    # -------------------------------------------------------------------------
    # SCENARIO 3: Global rollback
    # -------------------------------------------------------------------------
    print("\n" + "=" * 80)
    print("SCENARIO 3: GLOBAL ROLLBACK")
    print("=" * 80)

    start_time = time.time()
    results3 = RollbackScenario().run_experiment(n_replications=n_replications)
    print(f"\nUpdates lost per node: {results3['mean_lost']['mean']:.2f} ± "
          f"{results3['mean_lost']['std']:.2f} (max {results3['max_lost']:.0f})")
    print(f"Converged after rollback: {results3['converged_after_rollback']}")
    print(f"Completed in {time.time() - start_time:.1f}s")

    with open(f"{output_dir}/rollback_results.json", 'w') as f:
        json.dump(results3, f, indent=2)

    print("\n" + "=" * 80)
    print("EVALUATION COMPLETE")
    print("=" * 80)
    print(f"\nAll results saved to: {output_dir}/")


if __name__ == '__main__':
    import sys

    config.configure_logging('WARNING')
    output_dir = sys.argv[1] if len(sys.argv) > 1 else "results"

    run_all_scenarios(output_dir)
