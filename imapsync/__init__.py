"""Two-way synchronization between an IMAP account and a local Maildir."""

__version__ = "0.1.0"
