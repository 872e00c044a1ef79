"""
Shared protocol pieces: logical clock, wire messages, transport, invariants.
"""
