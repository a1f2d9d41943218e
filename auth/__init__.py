"""auth/ -- Session lifecycle for the directory client.

Layer rule: auth/ imports from core/ and cache/store.py only.
It does NOT import from directory/ or sync/.
The synchronizer calls into auth/, not the other way around.
"""
