"""
Kitee API - Application Package
=================================

What: The HTTP API server behind the Kitee forms product.
Why:  Groups the ingress pipeline, database connector, and route groups
      into one importable package (``kitee.main:app`` for uvicorn).

Layout:
    ┌─────────────────────────────────────┐
    │        Routes (route groups)        │  /, /health, /v1/*
    ├─────────────────────────────────────┤
    │     Middleware (ingress pipeline)   │  scrub, request ID, access log,
    │                                     │  body parser, CORS admission
    ├─────────────────────────────────────┤
    │      Database (MongoDB connector)   │  readiness-flagged shared client
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
