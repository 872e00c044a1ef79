"""
Protocol invariant checks — evaluated post-hoc over coordinator history and
node states.

History entries are (event, pid, clock) tuples recorded by the coordinator,
with event one of 'REQUEST', 'GRANT', 'DO_OP', 'RELEASE', 'EXPIRE', 'DISCONNECT'.
"""
from typing import Dict, Iterable, List, Sequence, Tuple

HistoryEntry = Tuple[str, int, int]


# ─── Mutual exclusion ────────────────────────────────────────────────────────

def check_single_holder(history: Iterable[HistoryEntry]) -> bool:
    """At most one outstanding GRANT at any point of the history."""
    holder = None
    for event, pid, _clock in history:
        if event == 'GRANT':
            if holder is not None:
                return False
            holder = pid
        elif event in ('RELEASE', 'EXPIRE'):
            holder = None
    return True


def grant_sequence(history: Iterable[HistoryEntry]) -> List[int]:
    return [pid for event, pid, _clock in history if event == 'GRANT']


def check_grant_order(requests: Sequence[Tuple[int, int]], grants: Sequence[int]) -> bool:
    """
    Grants served from a batch of queued (lamport_time, pid) requests must
    follow ascending (lamport_time, pid) order.
    """
    expected = [pid for _ts, pid in sorted(requests)]
    return list(grants) == expected


# ─── Replication ─────────────────────────────────────────────────────────────

def staleness(counter: int, states: Dict[int, Tuple[int, int]]) -> Dict[int, int]:
    """
    Per-node distance behind the canonical counter. states: pid -> (counter, lamport).
    A holder whose tentative increment is not yet confirmed counts as 0, not -1.
    """
    return {pid: max(0, counter - node_counter) for pid, (node_counter, _ts) in states.items()}


def check_convergence(counter: int, states: Dict[int, Tuple[int, int]]) -> bool:
    """Every node holds the canonical counter and they agree on its timestamp."""
    if not states:
        return True
    if any(node_counter != counter for node_counter, _ts in states.values()):
        return False
    return len({ts for _c, ts in states.values()}) == 1
