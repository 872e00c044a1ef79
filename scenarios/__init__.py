"""
Evaluation scenarios run against an in-process cluster
"""
from .convergence import ConvergenceScenario
from .crash_stall import CrashStallScenario
from .rollback import RollbackScenario

__all__ = ['ConvergenceScenario', 'CrashStallScenario', 'RollbackScenario']
