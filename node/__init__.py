"""
Node agent and its replicated, checkpointed state.
"""
