"""AI Cost Audit: usage analytics store and cross-source cost audits."""

__version__ = "0.1.0"
