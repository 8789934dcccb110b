"""core/ -- Kernel configuration shared by the credential store and the CLI.

Layer rule: core/ imports only stdlib + third-party libraries. It does NOT
import from credentials/ or main.py.
"""
