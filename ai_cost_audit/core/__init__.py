"""
Core modules for AI Cost Audit.

This package contains token accounting, pricing, cost resolution,
anomaly detection and usage aggregation.
"""
