"""
Chain Module - Root hash commitments
"""

from .ledger import CommitService, LedgerCommitService

__all__ = [
    'CommitService',
    'LedgerCommitService',
]
