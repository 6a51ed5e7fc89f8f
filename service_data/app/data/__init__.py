"""
Cache-aside data access for route handlers.
"""
