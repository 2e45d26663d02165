"""
Sync job implementations.

Importing this package registers every job with SyncRegistry.
"""

from civic_sync.services.bills_sync import BillsSync
from civic_sync.services.fec_finance_sync import FecFinanceSync
from civic_sync.services.votes_sync import VotesSync

__all__ = ["BillsSync", "FecFinanceSync", "VotesSync"]
