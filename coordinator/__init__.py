"""
Central arbiter: request ordering, grants, canonical counter, replication.
"""
