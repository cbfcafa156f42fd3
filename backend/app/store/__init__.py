"""Persistence for users, sessions and chat/Q&A messages.

Services:
    - ConferenceStore: DuckDB-backed store used by the socket hub and REST routers.
"""
