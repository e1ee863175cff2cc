"""
Cache Service package.

Hosts the two cache tiers used by the dashboard's API handlers and exposes
them over HTTP for maintenance: entry reads and writes, invalidation,
scheduled sweeps and in-flight fetch inspection.
"""
