"""Command implementations for the imap-sync CLI."""

from .sync import run_account, run_sync, sync_account

__all__ = [
    "run_account",
    "run_sync",
    "sync_account",
]
