"""
Shared error handling package.

Centralizes failure-to-HTTP mapping so that every failure
is consistently translated into the same API envelope.
"""
