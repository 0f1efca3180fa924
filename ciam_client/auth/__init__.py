"""
Authentication storage for the CIAM session client.

This package contains the in-memory token store and the durable stores for
the pending-login context and the remembered username.
"""
