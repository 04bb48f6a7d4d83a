"""PN case application for the rehab clinic backend.

Holds the case models and the transition engine with its course ledger.
"""
