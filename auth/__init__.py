"""auth/ -- API session tokens and FastAPI auth dependencies for AccessGate.

Layer rule: auth/ imports core/ plus third-party libraries.
It does NOT import from api/, identity/ or records/.
api/ imports from auth/, not the other way around.
"""
