"""
Shared data model, interfaces, exceptions and logging for the CIAM session client.
"""
