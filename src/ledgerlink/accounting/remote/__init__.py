"""Remote accounting service clients (QuickBooks Online) and OAuth provider."""

from src.ledgerlink.accounting.remote.adapter import RemoteClient
from src.ledgerlink.accounting.remote.oauth import IntuitOAuthProvider, OAuthProvider
from src.ledgerlink.accounting.remote.quickbooks import QuickBooksClient

__all__ = [
    "IntuitOAuthProvider",
    "OAuthProvider",
    "QuickBooksClient",
    "RemoteClient",
]
