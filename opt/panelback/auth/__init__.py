"""
Authentication package for the panel backend.

This package provides JWT session tokens, the bcrypt-backed user store and
the aiohttp middleware that protects the API.
"""
