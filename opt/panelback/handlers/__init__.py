"""
Handlers package for the panel backend.

This package contains API request handlers for:
- Login, session verification and token refresh
- Service liveness
- Update checks, updates and rollbacks
- Backup management and updater configuration
"""
