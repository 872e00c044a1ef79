"""
In-process cluster harness: coordinator and node agents over localhost TCP.
"""
