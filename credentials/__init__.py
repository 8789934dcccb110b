"""credentials/ -- Credential records, hashing, token encoding and the store.

Layer rule: credentials/ imports stdlib, third-party libraries and core/.
It does NOT import from main.py; the CLI and host applications import from
credentials/, not the other way around.
"""
