"""auth/ -- Session lifecycle package for orgaccess.

Record store, Account Status Oracle, Credential Gateway, OTC services,
Session State Machine, guards and token helpers.

Layer rule: auth/ may import from core/ and access/. It does NOT import
from api/. api/ imports from auth/, not the other way around.
"""
