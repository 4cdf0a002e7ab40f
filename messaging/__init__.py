"""
Messaging System - Relay Pipeline

Components:
- Intake: Parses Telegram updates into InboundMessage envelopes
- RateLimiter: Sliding-window admission control per user
- SessionStore: Conversation continuity per user
- TypingIndicator: Recurring "typing..." chat action
- ResponseProcessor: Formats AI answers for Telegram
- RelayController: Main orchestrator

Usage:
    from messaging import RelayController

    controller = RelayController.from_config(config)
    state = await controller.handle(message)
"""

from messaging.pipeline import RelayController, RelayState

__all__ = ['RelayController', 'RelayState']
__version__ = '1.0.0'
