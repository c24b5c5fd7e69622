"""
Key-value persistence for device-local state (trial start, last backend
record, last signed-in user). Memory, JSON file and Redis implementations.
"""
