"""Self-update, backup and rollback backend for the MikroTik admin panel."""

__version__ = '1.0.0'
