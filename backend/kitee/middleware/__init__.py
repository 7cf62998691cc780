# Middleware package init
"""
Kitee API - Middleware Package
================================

What:  The ingress pipeline applied to every request before routing.

Middleware Chain (order matters!):
    Request → [Header scrub] → [Request ID] → [Access log] → [Body parser]
            → [CORS admission] → Route Handler

    1. Header scrub FIRST: sees every response on the way out, including
       rejections produced further in
    2. Request ID: correlation ID for logs and error bodies
    3. Access log: times and logs everything below it
    4. Body parser: 50 MB limit and raw body capture
    5. CORS admission: foreign origins never reach a route
"""
