"""
Voicebot - Voice-driven conversations with a remote chat model.

Turns continuous speech capture into chat requests and speaks the replies
back, letting the user interrupt the bot mid-sentence.
"""

__version__ = "1.0.0"
