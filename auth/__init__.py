"""auth/ -- Authentication and authorization package for PocketLedger.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, otp/, audit/, or cache/.
api/ and otp/ import from auth/, not the other way around.
"""
