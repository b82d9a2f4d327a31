# src/jira_time/oauth/__init__.py

from .callback_server import OAuthCallbackServer, parse_callback_request
from .token_client import TokenExchangeClient, parse_token_response

__all__ = [
    "OAuthCallbackServer",
    "parse_callback_request",
    "TokenExchangeClient",
    "parse_token_response",
]
