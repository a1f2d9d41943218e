"""core/ -- Configuration, wire envelope, error taxonomy, events and transport.

Layer rule: core/ imports only stdlib + third-party libraries.
Every other package builds on it.
"""
