"""
Cache package.

Holds the last backend-derived entitlement with a short TTL so repeated
status checks inside the window skip the network.
"""
