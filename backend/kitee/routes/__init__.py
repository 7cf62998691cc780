# Routes package init
"""
Kitee API - Routes Package
============================

Route Inventory:
    - index.py:  GET /            (greeting)
                 GET /health      (service and database status)
    - v1.py:     GET /v1/users, /v1/forms, /v1/responses, /v1/insights
"""
