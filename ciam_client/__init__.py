"""
CIAM session client: Identity Service HTTP client, session orchestrator and
the command line login driver.
"""
