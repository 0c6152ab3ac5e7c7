"""
My Horse Manager - subscription gating core.

Reconciles purchase-service, backend and cached signals into one
authoritative premium decision and enforces free-tier limits.
"""
