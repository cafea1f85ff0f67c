"""
Shared module package.

Cross-cutting request defenses composed by the pipeline:
- Error classification and the response envelope
- Security headers, rate limiting and sanitization
- Logging configuration
"""
