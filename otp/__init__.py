"""otp/ -- One-time code lifecycle for sensitive account mutations.

Layer rule: otp/ may import from core/ and auth/. It does NOT import from
api/, audit/, or cache/.
"""
