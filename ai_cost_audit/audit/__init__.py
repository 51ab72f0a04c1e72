"""
Cross-source usage audit.

Compares locally recorded usage against the authoritative usage report and
stores the outcome as immutable snapshots.
"""
