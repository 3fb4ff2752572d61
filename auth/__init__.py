"""auth/ -- Authentication and identity boundary for Gatehouse.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/, web/, or core/. Configuration values arrive
through constructor arguments, wired up in api/main.py's lifespan.
api/ and web/ import from auth/, not the other way around.
"""
