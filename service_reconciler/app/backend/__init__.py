"""
Subscription backend client and response schemas.
"""
