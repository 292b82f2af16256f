"""Back up IMAP mailboxes to local JSON and replay them into another account."""

__version__ = "0.1.0"
