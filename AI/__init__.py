"""
AI Module - Backend Clients

Usage:
    from AI import DifyClient

    client = DifyClient(api_url, api_token)
    response = await client.chat("Hello", user="Ana")
"""

from AI.base_client import AIResponse, BaseAIClient
from AI.dify_client import DifyClient

__all__ = [
    'AIResponse',
    'BaseAIClient',
    'DifyClient',
]
