"""auth/ -- Sessions, tokens, credentials and device fingerprinting for SessionGuard.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, security/, or audit/.
api/, security/ and audit/ import from auth/, not the other way around.
"""
