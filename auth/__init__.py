"""auth/ -- Credential and session-lifecycle package for ChatAuth.

Layer rule: auth/ imports only stdlib + third-party libraries, plus
core.config for type hints. It does NOT import from api/ or ws/.
api/ and ws/ import from auth/, not the other way around.
"""
