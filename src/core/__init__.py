"""Core domain package for igbridge.

Core contains login, connection, ingestion and relay logic without any
Instagram, Telegram or storage-specific code, keeping the business logic
portable.
"""
