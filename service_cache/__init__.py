"""
Route cache service for ASGI applications.
"""
