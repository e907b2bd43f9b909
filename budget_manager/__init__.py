"""
Budget Manager

Personal budget ledger: accounts, transactions with linked transfers,
hierarchical tags, CSV import and net-worth reporting.
"""

__version__ = "1.0.0"
