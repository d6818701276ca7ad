"""access/ -- Role-based authorization policy for orgaccess.

Layer rule: access/ imports only the standard library. Every function here is
pure -- no I/O, no clocks, no globals that change after import.
auth/ and api/ import from access/, not the other way around.
"""
