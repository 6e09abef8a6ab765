"""L402 authentication tokens and the HashMail mailbox server."""

__version__ = "0.1.0"