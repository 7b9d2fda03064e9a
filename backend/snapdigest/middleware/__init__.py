"""
SnapDigest Backend — Middleware Package
========================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [Request ID] → [Rate Limit] → [Logging] → [GZip] → [CORS] → Route

    1. Request ID first: every later log line and error body, a rate
       limited 429 included, carries the correlation id
    2. Rate Limit: reject abusive addresses before any work
    3. Logging: access line with status and duration
"""
