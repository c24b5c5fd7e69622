"""
Store package.

Defines the platform store provider interface, an in-process provider
used locally and in tests, and the listener draining transaction updates.
"""
