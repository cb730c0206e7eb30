"""
Adapters for external collaborators (the hosted data store).
"""
