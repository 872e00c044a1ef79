"""
Generate figures from the JSON written by run_evaluation.py.

Generates:
- Figure 1: Replica staleness vs replication delay
- Figure 2: Staleness trace of one run, per node
- Figure 3: Counter progress after a crash inside the critical section
"""
import json
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
from matplotlib import rcParams

rcParams['font.family'] = 'serif'
rcParams['font.size'] = 10
rcParams['axes.labelsize'] = 10
rcParams['axes.titlesize'] = 11
rcParams['legend.fontsize'] = 9

NODE_COLORS = ['#2E7D32', '#1976D2', '#C62828', '#6A1B9A', '#EF6C00']


def load(results_dir: str, name: str) -> dict:
    with open(Path(results_dir) / name) as f:
        return json.load(f)


def save(fig, out_dir: Path, name: str):
    fig.tight_layout()
    fig.savefig(out_dir / f"{name}.pdf", dpi=300, bbox_inches='tight')
    fig.savefig(out_dir / f"{name}.png", dpi=300, bbox_inches='tight')
    print(f"✓ Saved: {name}.pdf/png")
    plt.close(fig)


def figure1_staleness_vs_delay(convergence: dict, out_dir: Path):
    """Figure 1: mean staleness ± std per replication delay bound, with linear fit."""
    by_delay = convergence['by_delay']
    delays = np.array(sorted(float(d) for d in by_delay))
    keys = [k for _, k in sorted((float(k), k) for k in by_delay)]
    mean = np.array([by_delay[k]['mean_staleness']['mean'] for k in keys])
    std = np.array([by_delay[k]['mean_staleness']['std'] for k in keys])

    fig, ax = plt.subplots(figsize=(7, 4))
    ax.errorbar(delays, mean, yerr=std, fmt='o-', capsize=4, linewidth=2,
                markersize=7, color='#1976D2', label='Measured')

    if len(delays) >= 2:
        coeffs = np.polyfit(delays, mean, 1)
        poly = np.poly1d(coeffs)
        fit_x = np.linspace(delays.min(), delays.max(), 100)
        ax.plot(fit_x, poly(fit_x), '--', color='#D32F2F', linewidth=1.5,
                label=f'Linear fit: {coeffs[0]:.2f}d + {coeffs[1]:.2f}')

    ax.set_xlabel('Replication delay bound (s)')
    ax.set_ylabel('Mean staleness (updates behind)')
    ax.set_title('Replica Staleness vs Replication Delay')
    ax.legend(loc='upper left')
    ax.grid(True, alpha=0.3, linestyle='--')
    save(fig, out_dir, 'fig1_staleness_delay')


def figure2_staleness_trace(convergence: dict, out_dir: Path):
    """Figure 2: per-node staleness over time for the largest delay bound."""
    by_delay = convergence['by_delay']
    key = max(by_delay, key=float)
    trace = by_delay[key]['trace']
    t = np.array(trace.get('t', []))

    fig, ax = plt.subplots(figsize=(7, 4))
    for i, series in enumerate(trace.get('staleness', [])):
        ax.step(t, series, where='post', linewidth=1.2,
                color=NODE_COLORS[i % len(NODE_COLORS)], label=f'node {i + 1}')
    ax.set_xlabel('Time (s)')
    ax.set_ylabel('Updates behind coordinator')
    ax.set_title(f'Staleness Trace (delay <= {key}s)')
    ax.legend(loc='upper right')
    ax.grid(True, alpha=0.3, linestyle='--')
    save(fig, out_dir, 'fig2_staleness_trace')


def figure3_crash_progress(crash: dict, out_dir: Path):
    """Figure 3: canonical counter after the crash, with and without a lease."""
    fig, ax = plt.subplots(figsize=(7, 4))
    for i, (label, result) in enumerate(sorted(crash.items())):
        trace = result['trace']
        counter = np.array(trace.get('counter', []), dtype=float)
        if counter.size:
            counter = counter - counter[0]
        ax.plot(trace.get('t', []), counter, linewidth=2,
                color=NODE_COLORS[i % len(NODE_COLORS)], label=label)
    ax.set_xlabel('Time since crash (s)')
    ax.set_ylabel('Operations completed since crash')
    ax.set_title('Progress After a Crash in the Critical Section')
    ax.legend(loc='upper left')
    ax.grid(True, alpha=0.3, linestyle='--')
    save(fig, out_dir, 'fig3_crash_progress')


def generate_all_figures(results_dir: str = 'results', out_dir: str = 'figures'):
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    print(f"Generating figures from {results_dir}/ ...\n")

    convergence = load(results_dir, 'convergence_results.json')
    figure1_staleness_vs_delay(convergence, out)
    figure2_staleness_trace(convergence, out)
    figure3_crash_progress(load(results_dir, 'crash_results.json'), out)

    print(f"\n✓ All figures generated in ./{out_dir}/")


if __name__ == "__main__":
    generate_all_figures(sys.argv[1] if len(sys.argv) > 1 else 'results')
