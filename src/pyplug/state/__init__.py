"""State layer.

This package owns the lifecycle state of every resource: the transition
table, reconciliation with the host and the store that merges both into
one authoritative value per resource.
"""
