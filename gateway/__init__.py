"""
Command gateway - rule-based admission, credit debiting and approval for submitted commands.
"""
