"""
ladder_server - HTTP surface for the challenge ladder

Thin FastAPI layer over ChallengeEngine. Every ladder rule lives in the
engine; this package only maps requests to calls and rejections to
status codes.
"""

from .server import app

__all__ = ["app"]
