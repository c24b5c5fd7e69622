"""
Local free-trial clock.
"""
