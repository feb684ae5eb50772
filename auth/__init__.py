"""auth/ -- Identity, credential and session services for BTHL.

Layer rule: auth/ may import core/ (settings, clock) and third-party
libraries. It does NOT import from api/; the HTTP layer wraps these
services, never the other way around. auth/dependencies.py is the only
module that touches FastAPI.
"""
