"""
Backend package for the couple sync client.

This package provides the sync service together with the gateway, storage,
settings and listener abstractions it runs on, so the app can talk to
Firestore and object storage or to in-memory doubles during tests.
"""
