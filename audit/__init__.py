"""audit/ -- Best-effort, non-blocking activity audit trail.

Layer rule: audit/ may import from core/ and auth/ (for Principal). It does
NOT import from api/, otp/, or cache/.
"""
