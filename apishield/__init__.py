"""
api-shield: inbound request defense and error normalization for ASGI APIs.

Rate limiting, security headers, input sanitization and a unified
error envelope, composed into a single request pipeline.
"""

__version__ = "0.1.0"
